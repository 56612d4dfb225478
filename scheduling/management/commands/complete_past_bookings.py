"""
Mark past bookings as completed.
Run: python manage.py complete_past_bookings
Meant for cron, e.g. every 5 minutes; re-running is harmless.
"""
import logging

from django.core.management.base import BaseCommand

from scheduling.availability import AvailabilityService

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Marks booked timeslots whose end time has passed as completed.'

    def handle(self, *args, **options):
        self.stdout.write('Updating completed bookings...')
        count = AvailabilityService().complete_past_bookings()
        logger.debug("complete_past_bookings: %s row(s) updated", count)
        self.stdout.write(self.style.SUCCESS(f"Updated {count} booking(s) to completed status"))
