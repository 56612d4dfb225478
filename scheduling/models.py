from datetime import timedelta

from django.conf import settings
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone

from accounts.models import linked_provider_ids

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 480


class TimeslotQuerySet(models.QuerySet):
    """Composable read-side filters; chaining them ANDs the predicates."""

    def available(self, now=None):
        return self.filter(status=Timeslot.STATUS_AVAILABLE).future(now)

    def booked(self):
        return self.filter(status=Timeslot.STATUS_BOOKED)

    def completed(self):
        return self.filter(status=Timeslot.STATUS_COMPLETED)

    def future(self, now=None):
        return self.filter(start_time__gt=now or timezone.now())

    def for_provider(self, provider):
        return self.filter(provider=provider)

    def for_client(self, client):
        return self.filter(client=client)

    def for_client_providers(self, client):
        return self.filter(provider_id__in=linked_provider_ids(client))

    def for_providers(self, provider_ids):
        return self.filter(provider_id__in=provider_ids)

    def on_date(self, day):
        return self.filter(start_time__date=day)

    def overlapping(self, start, end):
        # [start, end) intervals overlap when each starts before the other ends
        return self.filter(start_time__lt=end, end_time__gt=start)

    def ended_before(self, moment):
        return self.filter(end_time__lt=moment)


class Timeslot(models.Model):
    """Bookable time window of a service provider, optionally assigned to a client"""
    STATUS_AVAILABLE = 'available'
    STATUS_BOOKED = 'booked'
    STATUS_COMPLETED = 'completed'
    STATUS_CHOICES = [
        (STATUS_AVAILABLE, 'Available'),
        (STATUS_BOOKED, 'Booked'),
        (STATUS_COMPLETED, 'Completed'),
    ]

    provider = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='timeslots')
    client = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, related_name='booked_timeslots', null=True, blank=True
    )
    start_time = models.DateTimeField(verbose_name='Start time')
    duration_minutes = models.PositiveIntegerField(
        verbose_name='Duration (minutes)',
        validators=[MinValueValidator(MIN_DURATION_MINUTES), MaxValueValidator(MAX_DURATION_MINUTES)],
    )
    # start_time + duration_minutes, kept in sync by save()
    end_time = models.DateTimeField(editable=False, verbose_name='End time')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_AVAILABLE, verbose_name='Status')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = TimeslotQuerySet.as_manager()

    class Meta:
        ordering = ['start_time']
        indexes = [
            models.Index(fields=['provider', 'start_time'], name='timeslot_provider_start_idx'),
            models.Index(fields=['status', 'start_time'], name='timeslot_status_start_idx'),
            models.Index(fields=['status', 'end_time'], name='timeslot_status_end_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(status='available', client__isnull=True)
                    | Q(status='booked', client__isnull=False)
                    | Q(status='completed')
                ),
                name='timeslot_status_matches_client',
            ),
        ]
        permissions = [
            ('book_timeslot', 'Can book timeslot'),
            ('complete_timeslot', 'Can complete timeslot'),
        ]

    def save(self, *args, **kwargs):
        self.end_time = self.compute_end_time()
        update_fields = kwargs.get('update_fields')
        if update_fields is not None and {'start_time', 'duration_minutes'} & set(update_fields):
            kwargs['update_fields'] = set(update_fields) | {'end_time'}
        super().save(*args, **kwargs)

    def compute_end_time(self):
        return self.start_time + timedelta(minutes=self.duration_minutes)

    @property
    def is_available(self):
        return self.status == self.STATUS_AVAILABLE

    @property
    def is_booked(self):
        return self.status == self.STATUS_BOOKED

    @property
    def is_completed(self):
        return self.status == self.STATUS_COMPLETED

    def is_future(self, now=None):
        return self.start_time > (now or timezone.now())

    def __str__(self):
        return f"{self.provider.username} - {self.start_time:%Y-%m-%d %H:%M} ({self.duration_minutes} min, {self.status})"
