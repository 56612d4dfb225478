"""
Authorization predicates for timeslots.

Each function answers one question about an actor and a timeslot and has no
side effects. Callers decide what to do with a refusal.
"""
from django.utils import timezone

from accounts.models import is_admin, is_client, is_service_provider, has_provider


def _owns(user, timeslot):
    return user.pk == timeslot.provider_id


def can_view_any(user):
    return user.has_perm('scheduling.view_timeslot') or is_service_provider(user) or is_admin(user)


def can_view(user, timeslot):
    return _owns(user, timeslot) or is_admin(user) or (user.pk is not None and user.pk == timeslot.client_id)


def can_create(user):
    return user.has_perm('scheduling.add_timeslot') or is_service_provider(user) or is_admin(user)


def can_update(user, timeslot):
    if is_admin(user):
        return True
    # Booked timeslots are frozen for the provider
    return _owns(user, timeslot) and not timeslot.is_booked


def can_delete(user, timeslot):
    if is_admin(user):
        return True
    return _owns(user, timeslot) and not timeslot.is_booked


def can_book(user, timeslot, now=None):
    """A linked client booking an open future timeslot for themselves, or an admin."""
    if is_admin(user):
        return True
    if not (is_client(user) or user.has_perm('scheduling.book_timeslot')):
        return False
    if not timeslot.is_available or not timeslot.is_future(now or timezone.now()):
        return False
    return has_provider(user, timeslot.provider_id)


def can_assign_client(user, timeslot):
    """Provider or admin putting a client on an available or already booked (reassignment) timeslot."""
    if not (_owns(user, timeslot) or is_admin(user)):
        return False
    return timeslot.is_available or timeslot.is_booked


def can_cancel_booking(user, timeslot, now=None):
    if not timeslot.is_booked:
        return False
    if is_admin(user) or _owns(user, timeslot):
        return True
    # The client may only drop a booking that has not started yet
    return user.pk == timeslot.client_id and timeslot.is_future(now or timezone.now())


def can_complete(user, timeslot):
    if not timeslot.is_booked or timeslot.client_id is None:
        return False
    return (_owns(user, timeslot) and is_service_provider(user)) or is_admin(user)
