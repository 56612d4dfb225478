"""
Signals for scheduling: keep timeslots consistent when a user account is deleted.
"""
import logging

from django.conf import settings
from django.db.models.signals import pre_delete
from django.dispatch import receiver
from django.utils import timezone

from .models import Timeslot

logger = logging.getLogger(__name__)


@receiver(pre_delete, sender=settings.AUTH_USER_MODEL)
def release_bookings_of_deleted_client(sender, instance, **kwargs):
    """Booked timeslots of a deleted client become available again; completed ones just lose the client."""
    released = Timeslot.objects.booked().for_client(instance).update(
        status=Timeslot.STATUS_AVAILABLE,
        client=None,
        updated_at=timezone.now(),
    )
    if released:
        logger.info("Released %s booked timeslot(s) of deleted user id=%s", released, instance.pk)
