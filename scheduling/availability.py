"""
Availability engine: the timeslot lifecycle and its transitions.

    available --book--> booked --complete--> completed
        ^                 |
        +-----cancel------+

`booked` may also be re-booked by the provider or an admin to swap the
client. Deleting is allowed from `available` and `completed` only.

Every transition runs in its own transaction. Booking additionally holds an
exclusive row lock on the timeslot between the precondition check and the
write, so two clients racing for the same slot cannot both get it.
"""
import functools
import logging
from datetime import timedelta

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import PermissionDenied
from django.db import DatabaseError, transaction
from django.utils import timezone

from accounts.models import is_admin, is_client, is_service_provider, has_client
from . import policies
from .exceptions import (
    BookingConflict,
    InvalidStateTransition,
    NotFound,
    UnauthorizedRelationship,
    ValidationError,
)
from .models import Timeslot, MIN_DURATION_MINUTES, MAX_DURATION_MINUTES

logger = logging.getLogger(__name__)

REFUSALS = (PermissionDenied, UnauthorizedRelationship, BookingConflict, InvalidStateTransition)


def logs_refusals(method):
    """Log conflicts and denials raised by a service operation at WARNING, then re-raise."""
    @functools.wraps(method)
    def wrapper(self, actor, *args, **kwargs):
        try:
            return method(self, actor, *args, **kwargs)
        except REFUSALS as exc:
            logger.warning(
                "%s%r refused for user id=%s: %s", method.__name__, args, getattr(actor, "pk", None), exc,
            )
            raise
    return wrapper


class AvailabilityService:
    """
    Transition operations over timeslots.

    `clock` is a zero-argument callable returning an aware datetime; it is the
    only source of "now" for the service, so tests can move time freely.
    """

    def __init__(self, clock=None):
        self.clock = clock or timezone.now

    def now(self):
        return self.clock()

    @logs_refusals
    def get_timeslot(self, actor, timeslot_id):
        timeslot = self._get_timeslot(timeslot_id)
        if not policies.can_view(actor, timeslot):
            raise PermissionDenied('You are not allowed to view this timeslot.')
        return timeslot

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @logs_refusals
    def create_timeslot(self, actor, start_time, duration_minutes, client_id=None, provider_id=None):
        """
        Create a timeslot for `actor` (or, for admins, for `provider_id`).

        With `client_id` the timeslot is created directly as booked for that
        client, who must be linked to the provider.
        """
        if not policies.can_create(actor):
            raise PermissionDenied('You are not allowed to create timeslots.')

        provider = self._resolve_provider(actor, provider_id)
        duration = self._clean_duration(duration_minutes)
        start_time = self._clean_start_time(start_time)
        end_time = start_time + timedelta(minutes=duration)

        with transaction.atomic():
            self._ensure_no_overlap(
                provider.pk, start_time, end_time,
                field='start_time',
                message='This timeslot overlaps with an existing timeslot.',
            )
            client = None
            if client_id is not None:
                client = self._get_client(client_id)
                if not has_client(provider, client.pk):
                    raise UnauthorizedRelationship('You can only assign clients you are linked to.')

            timeslot = Timeslot.objects.create(
                provider=provider,
                client=client,
                start_time=start_time,
                duration_minutes=duration,
                status=Timeslot.STATUS_BOOKED if client else Timeslot.STATUS_AVAILABLE,
            )

        logger.info(
            "Timeslot id=%s created by user id=%s for provider id=%s (%s, %s min)",
            timeslot.pk, actor.pk, provider.pk, timeslot.status, duration,
        )
        return timeslot

    @logs_refusals
    def update_duration(self, actor, timeslot_id, duration_minutes):
        duration = self._clean_duration(duration_minutes)

        with transaction.atomic():
            timeslot = self._get_timeslot(timeslot_id)
            if not policies.can_update(actor, timeslot):
                if timeslot.is_booked and actor.pk == timeslot.provider_id:
                    raise InvalidStateTransition('Booked timeslots cannot be changed. Cancel the booking first.')
                raise PermissionDenied('You are not allowed to change this timeslot.')

            end_time = timeslot.start_time + timedelta(minutes=duration)
            self._ensure_no_overlap(
                timeslot.provider_id, timeslot.start_time, end_time,
                exclude_id=timeslot.pk,
                field='duration_minutes',
                message='This duration would cause the timeslot to overlap with an existing timeslot.',
            )
            timeslot.duration_minutes = duration
            timeslot.save(update_fields=['duration_minutes', 'updated_at'])

        logger.info("Timeslot id=%s duration set to %s min by user id=%s", timeslot.pk, duration, actor.pk)
        return timeslot

    @logs_refusals
    def book_timeslot(self, actor, timeslot_id, client_id=None):
        """
        Book a timeslot.

        A client books an available future timeslot of a linked provider for
        themselves. The owning provider or an admin passes `client_id` to
        assign a linked client, which also works on an already booked
        timeslot (reassignment).
        """
        now = self.now()
        try:
            with transaction.atomic():
                timeslot = self._get_timeslot(timeslot_id, lock=True)
                if is_admin(actor) or actor.pk == timeslot.provider_id:
                    client = self._check_assignment(actor, timeslot, client_id, now)
                else:
                    client = self._check_self_booking(actor, timeslot, client_id, now)

                previous_client_id = timeslot.client_id
                timeslot.client = client
                timeslot.status = Timeslot.STATUS_BOOKED
                timeslot.save(update_fields=['client', 'status', 'updated_at'])
        except DatabaseError as exc:
            logger.debug("Timeslot id=%s: lock for user id=%s failed: %s", timeslot_id, actor.pk, exc)
            raise BookingConflict() from exc

        if previous_client_id and previous_client_id != client.pk:
            logger.info(
                "Timeslot id=%s reassigned from client id=%s to client id=%s by user id=%s",
                timeslot.pk, previous_client_id, client.pk, actor.pk,
            )
        else:
            logger.info("Timeslot id=%s booked for client id=%s by user id=%s", timeslot.pk, client.pk, actor.pk)
        return timeslot

    @logs_refusals
    def cancel_booking(self, actor, timeslot_id):
        """Drop the booking; the timeslot becomes available again."""
        with transaction.atomic():
            timeslot = self._get_timeslot(timeslot_id)
            if not timeslot.is_booked:
                raise InvalidStateTransition('This timeslot has no booking to cancel.')
            if not policies.can_cancel_booking(actor, timeslot, self.now()):
                raise PermissionDenied('You are not allowed to cancel this booking.')

            client_id = timeslot.client_id
            timeslot.client = None
            timeslot.status = Timeslot.STATUS_AVAILABLE
            timeslot.save(update_fields=['client', 'status', 'updated_at'])

        logger.info("Timeslot id=%s booking of client id=%s cancelled by user id=%s", timeslot.pk, client_id, actor.pk)
        return timeslot

    @logs_refusals
    def complete_timeslot(self, actor, timeslot_id):
        with transaction.atomic():
            timeslot = self._get_timeslot(timeslot_id)
            if not timeslot.is_booked:
                raise InvalidStateTransition('Only booked timeslots can be marked as completed.')
            if not policies.can_complete(actor, timeslot):
                raise PermissionDenied('You are not allowed to complete this timeslot.')

            timeslot.status = Timeslot.STATUS_COMPLETED
            timeslot.save(update_fields=['status', 'updated_at'])

        logger.info("Timeslot id=%s marked completed by user id=%s", timeslot.pk, actor.pk)
        return timeslot

    @logs_refusals
    def delete_timeslot(self, actor, timeslot_id):
        with transaction.atomic():
            timeslot = self._get_timeslot(timeslot_id)
            if timeslot.is_booked:
                raise InvalidStateTransition('Booked timeslots cannot be deleted. Cancel the booking first.')
            if not policies.can_delete(actor, timeslot):
                raise PermissionDenied('You are not allowed to delete this timeslot.')
            timeslot.delete()

        logger.info("Timeslot id=%s deleted by user id=%s", timeslot_id, actor.pk)

    def complete_past_bookings(self):
        """
        Mark every booked timeslot whose end time has passed as completed.

        Idempotent: a second run with the same clock finds nothing to do.
        Returns the number of timeslots moved.
        """
        now = self.now()
        count = Timeslot.objects.booked().ended_before(now).update(
            status=Timeslot.STATUS_COMPLETED,
            updated_at=now,
        )
        if count:
            logger.info("Marked %s past booking(s) as completed", count)
        return count

    # ------------------------------------------------------------------
    # Booking preconditions (called with the row lock held)
    # ------------------------------------------------------------------

    def _check_self_booking(self, actor, timeslot, client_id, now):
        if client_id is not None and self._clean_client_id(client_id) != actor.pk:
            raise PermissionDenied('Clients can only book timeslots for themselves.')
        if policies.can_book(actor, timeslot, now):
            return actor

        # Refused: report the first precondition that failed
        if not (is_client(actor) or actor.has_perm('scheduling.book_timeslot')):
            raise PermissionDenied('Only clients can book timeslots.')
        if not timeslot.is_available:
            raise BookingConflict('This timeslot has already been booked.')
        if not timeslot.is_future(now):
            raise BookingConflict('This timeslot is no longer available for booking.')
        raise UnauthorizedRelationship('You must be linked to this provider to book their timeslots.')

    def _check_assignment(self, actor, timeslot, client_id, now):
        if client_id is None:
            raise ValidationError('client_id', 'Please select a client.')
        if timeslot.is_completed:
            raise InvalidStateTransition('Completed timeslots cannot be reassigned.')
        if not policies.can_assign_client(actor, timeslot):
            raise PermissionDenied('You are not allowed to assign clients to this timeslot.')
        if not timeslot.is_future(now):
            raise BookingConflict('This timeslot is no longer available for booking.')
        client = self._get_client(client_id)
        if not has_client(timeslot.provider_id, client.pk):
            raise UnauthorizedRelationship('You can only assign clients you are linked to.')
        return client

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_timeslot(self, timeslot_id, lock=False):
        queryset = Timeslot.objects.all()
        if lock:
            queryset = queryset.select_for_update(nowait=getattr(settings, 'BOOKING_LOCK_NOWAIT', False))
        try:
            return queryset.get(pk=timeslot_id)
        except Timeslot.DoesNotExist:
            raise NotFound(f'Timeslot {timeslot_id} does not exist.')

    def _clean_client_id(self, client_id):
        try:
            return int(client_id)
        except (TypeError, ValueError):
            raise ValidationError('client_id', 'The client id must be a number.')

    def _get_client(self, client_id):
        User = get_user_model()
        try:
            client = User.objects.select_related('profile').get(pk=client_id)
        except (User.DoesNotExist, ValueError, TypeError):
            raise NotFound('The selected client does not exist.')
        if not is_client(client):
            raise ValidationError('client_id', 'The selected user is not a client.')
        return client

    def _resolve_provider(self, actor, provider_id):
        if provider_id is None or str(provider_id) == str(actor.pk):
            return actor
        if not is_admin(actor):
            raise PermissionDenied('You can only create timeslots for yourself.')
        User = get_user_model()
        try:
            provider = User.objects.select_related('profile').get(pk=provider_id)
        except (User.DoesNotExist, ValueError, TypeError):
            raise NotFound('The selected provider does not exist.')
        if not is_service_provider(provider):
            raise ValidationError('provider_id', 'The selected user is not a service provider.')
        return provider

    def _clean_duration(self, duration_minutes):
        if isinstance(duration_minutes, str) and duration_minutes.strip().isdigit():
            duration_minutes = int(duration_minutes)
        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
            raise ValidationError('duration_minutes', 'The duration must be a number.')
        duration = duration_minutes
        if duration < MIN_DURATION_MINUTES:
            raise ValidationError('duration_minutes', f'The duration must be at least {MIN_DURATION_MINUTES} minutes.')
        if duration > MAX_DURATION_MINUTES:
            raise ValidationError(
                'duration_minutes',
                f'The duration cannot exceed 8 hours ({MAX_DURATION_MINUTES} minutes).',
            )
        return duration

    def _clean_start_time(self, start_time):
        if start_time is None:
            raise ValidationError('start_time', 'The start time is required.')
        if timezone.is_naive(start_time):
            start_time = timezone.make_aware(start_time)
        if start_time <= self.now():
            raise ValidationError('start_time', 'The start time must be in the future.')
        return start_time

    def _ensure_no_overlap(self, provider_id, start_time, end_time, field, message, exclude_id=None):
        # Any status counts: completed and booked slots still occupy the provider's time
        clashes = Timeslot.objects.filter(provider_id=provider_id).overlapping(start_time, end_time)
        if exclude_id is not None:
            clashes = clashes.exclude(pk=exclude_id)
        if clashes.exists():
            raise ValidationError(field, message)
