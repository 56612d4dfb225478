"""
Tests for timeslots: model, query predicates, policies, the availability engine and the API
"""
import threading
from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from unittest import mock

from django.contrib.auth.models import User, Permission
from django.core.exceptions import PermissionDenied
from django.core.management import call_command
from django.db import IntegrityError, OperationalError, connection, transaction
from django.db.models import QuerySet
from django.test import TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from accounts.models import UserProfile, ProviderClientLink
from scheduling import policies
from scheduling.availability import AvailabilityService
from scheduling.exceptions import (
    BookingConflict,
    InvalidStateTransition,
    NotFound,
    UnauthorizedRelationship,
    ValidationError,
)
from scheduling.models import Timeslot
from scheduling.queries import (
    bookable_timeslots,
    bookings_for,
    calendar_timeslots,
    provider_timeslots,
    upcoming_bookings,
)

NOW = datetime(2030, 1, 15, 9, 0, tzinfo=dt_timezone.utc)


class FrozenClock:
    def __init__(self, moment):
        self.moment = moment

    def __call__(self):
        return self.moment

    def advance(self, **kwargs):
        self.moment += timedelta(**kwargs)


def make_user(username, role):
    user = User.objects.create_user(username=username, email=username, password="testpass123")
    UserProfile.objects.create(user=user, role=role)
    return user


def link(provider, client, status=ProviderClientLink.STATUS_ACTIVE):
    return ProviderClientLink.objects.create(provider=provider, client=client, status=status)


def make_slot(provider, start_time, duration_minutes=60, client=None, status=None):
    if status is None:
        status = Timeslot.STATUS_BOOKED if client else Timeslot.STATUS_AVAILABLE
    return Timeslot.objects.create(
        provider=provider,
        client=client,
        start_time=start_time,
        duration_minutes=duration_minutes,
        status=status,
    )


class SchedulingTestMixin:
    """Admin, provider and a client linked to the provider; engine pinned to NOW."""

    def setUp(self):
        self.admin = make_user("admin@test.com", UserProfile.ROLE_ADMIN)
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.other_provider = make_user("other-provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.client_user = make_user("client@test.com", UserProfile.ROLE_CLIENT)
        self.other_client = make_user("other-client@test.com", UserProfile.ROLE_CLIENT)
        link(self.provider, self.client_user)
        link(self.provider, self.other_client)
        self.clock = FrozenClock(NOW)
        self.service = AvailabilityService(clock=self.clock)


class TimeslotModelTests(TestCase):
    """Timeslot model"""

    def setUp(self):
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.client_user = make_user("client@test.com", UserProfile.ROLE_CLIENT)

    def test_end_time_is_start_plus_duration(self):
        slot = make_slot(self.provider, NOW, duration_minutes=45)
        self.assertEqual(slot.end_time, NOW + timedelta(minutes=45))

    def test_end_time_follows_duration_with_update_fields(self):
        slot = make_slot(self.provider, NOW, duration_minutes=60)
        slot.duration_minutes = 90
        slot.save(update_fields=["duration_minutes"])
        slot.refresh_from_db()
        self.assertEqual(slot.end_time, NOW + timedelta(minutes=90))

    def test_status_flags(self):
        slot = make_slot(self.provider, NOW)
        self.assertTrue(slot.is_available)
        self.assertFalse(slot.is_booked)
        booked = make_slot(self.provider, NOW + timedelta(hours=2), client=self.client_user)
        self.assertTrue(booked.is_booked)
        self.assertFalse(booked.is_completed)

    def test_booked_timeslot_requires_client(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                make_slot(self.provider, NOW, status=Timeslot.STATUS_BOOKED)

    def test_available_timeslot_cannot_have_client(self):
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                make_slot(self.provider, NOW, client=self.client_user, status=Timeslot.STATUS_AVAILABLE)


class TimeslotQuerySetTests(TestCase):
    """Query predicates"""

    def setUp(self):
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.unlinked_provider = make_user("unlinked@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.client_user = make_user("client@test.com", UserProfile.ROLE_CLIENT)
        link(self.provider, self.client_user)
        self.past = make_slot(self.provider, NOW - timedelta(days=1))
        self.open = make_slot(self.provider, NOW + timedelta(days=1))
        self.booked = make_slot(self.provider, NOW + timedelta(days=2), client=self.client_user)
        self.elsewhere = make_slot(self.unlinked_provider, NOW + timedelta(days=1))

    def test_available_is_open_and_future(self):
        self.assertEqual(
            set(Timeslot.objects.available(NOW)),
            {self.open, self.elsewhere},
        )

    def test_future(self):
        self.assertNotIn(self.past, Timeslot.objects.future(NOW))

    def test_filters_compose(self):
        slots = Timeslot.objects.for_provider(self.provider).available(NOW)
        self.assertEqual(list(slots), [self.open])

    def test_for_client_providers_uses_active_links_only(self):
        self.assertEqual(
            set(Timeslot.objects.for_client_providers(self.client_user)),
            {self.past, self.open, self.booked},
        )
        ProviderClientLink.objects.update(status=ProviderClientLink.STATUS_INACTIVE)
        self.assertFalse(Timeslot.objects.for_client_providers(self.client_user).exists())

    def test_overlapping_treats_intervals_as_half_open(self):
        start = self.open.start_time
        self.assertTrue(Timeslot.objects.overlapping(start + timedelta(minutes=30), start + timedelta(minutes=90)).filter(pk=self.open.pk).exists())
        self.assertFalse(Timeslot.objects.overlapping(self.open.end_time, self.open.end_time + timedelta(hours=1)).filter(pk=self.open.pk).exists())
        self.assertFalse(Timeslot.objects.overlapping(start - timedelta(hours=1), start).filter(pk=self.open.pk).exists())


class TimeslotPolicyTests(TestCase):
    """Authorization predicates"""

    def setUp(self):
        self.admin = make_user("admin@test.com", UserProfile.ROLE_ADMIN)
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.client_user = make_user("client@test.com", UserProfile.ROLE_CLIENT)
        link(self.provider, self.client_user)
        self.future = timezone.now() + timedelta(days=2)
        self.past = timezone.now() - timedelta(days=2)

    def test_client_can_cancel_future_booked_timeslot(self):
        slot = make_slot(self.provider, self.future, client=self.client_user)
        self.assertTrue(policies.can_cancel_booking(self.client_user, slot))

    def test_client_cannot_cancel_past_booked_timeslot(self):
        slot = make_slot(self.provider, self.past, client=self.client_user)
        self.assertFalse(policies.can_cancel_booking(self.client_user, slot))

    def test_provider_can_cancel_past_booked_timeslot(self):
        slot = make_slot(self.provider, self.past, client=self.client_user)
        self.assertTrue(policies.can_cancel_booking(self.provider, slot))

    def test_admin_can_cancel_past_booked_timeslot(self):
        slot = make_slot(self.provider, self.past, client=self.client_user)
        self.assertTrue(policies.can_cancel_booking(self.admin, slot))

    def test_client_cannot_cancel_available_timeslot(self):
        slot = make_slot(self.provider, self.future)
        self.assertFalse(policies.can_cancel_booking(self.client_user, slot))

    def test_client_cannot_cancel_another_clients_booking(self):
        another = make_user("another@test.com", UserProfile.ROLE_CLIENT)
        slot = make_slot(self.provider, self.future, client=another)
        self.assertFalse(policies.can_cancel_booking(self.client_user, slot))

    def test_client_can_book_available_future_timeslot_from_linked_provider(self):
        slot = make_slot(self.provider, self.future)
        self.assertTrue(policies.can_book(self.client_user, slot))

    def test_client_cannot_book_timeslot_from_unlinked_provider(self):
        another_provider = make_user("another-provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        slot = make_slot(another_provider, self.future)
        self.assertFalse(policies.can_book(self.client_user, slot))

    def test_client_cannot_book_past_timeslot(self):
        slot = make_slot(self.provider, self.past)
        self.assertFalse(policies.can_book(self.client_user, slot))

    def test_provider_can_update_own_available_timeslot(self):
        slot = make_slot(self.provider, self.future)
        self.assertTrue(policies.can_update(self.provider, slot))

    def test_provider_cannot_update_booked_timeslot(self):
        slot = make_slot(self.provider, self.future, client=self.client_user)
        self.assertFalse(policies.can_update(self.provider, slot))
        self.assertTrue(policies.can_update(self.admin, slot))

    def test_provider_cannot_delete_someone_elses_timeslot(self):
        another_provider = make_user("another-provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        slot = make_slot(another_provider, self.future)
        self.assertFalse(policies.can_delete(self.provider, slot))
        self.assertTrue(policies.can_delete(self.admin, slot))

    def test_only_owner_or_admin_can_complete(self):
        slot = make_slot(self.provider, self.past, client=self.client_user)
        self.assertTrue(policies.can_complete(self.provider, slot))
        self.assertTrue(policies.can_complete(self.admin, slot))
        self.assertFalse(policies.can_complete(self.client_user, slot))

    def test_create_is_granted_by_role_or_permission(self):
        self.assertTrue(policies.can_create(self.provider))
        self.assertTrue(policies.can_create(self.admin))
        self.assertFalse(policies.can_create(self.client_user))
        self.client_user.user_permissions.add(Permission.objects.get(codename="add_timeslot", content_type__app_label="scheduling"))
        self.client_user = User.objects.get(pk=self.client_user.pk)
        self.assertTrue(policies.can_create(self.client_user))

    def test_view_is_owner_admin_or_booked_client(self):
        slot = make_slot(self.provider, self.future)
        self.assertTrue(policies.can_view(self.provider, slot))
        self.assertTrue(policies.can_view(self.admin, slot))
        self.assertFalse(policies.can_view(self.client_user, slot))
        booked = make_slot(self.provider, self.future + timedelta(hours=2), client=self.client_user)
        self.assertTrue(policies.can_view(self.client_user, booked))


class CreateTimeslotTests(SchedulingTestMixin, TestCase):
    """createTimeslot"""

    def test_creates_available_timeslot(self):
        slot = self.service.create_timeslot(self.provider, NOW + timedelta(days=2), 60)
        self.assertEqual(slot.status, Timeslot.STATUS_AVAILABLE)
        self.assertIsNone(slot.client)
        self.assertEqual(slot.end_time, NOW + timedelta(days=2, minutes=60))

    def test_with_client_is_booked_immediately(self):
        slot = self.service.create_timeslot(self.provider, NOW + timedelta(days=2), 60, client_id=self.client_user.pk)
        slot.refresh_from_db()
        self.assertEqual(slot.status, Timeslot.STATUS_BOOKED)
        self.assertEqual(slot.client, self.client_user)

    def test_with_unlinked_client_fails(self):
        stranger = make_user("stranger@test.com", UserProfile.ROLE_CLIENT)
        with self.assertRaises(UnauthorizedRelationship):
            self.service.create_timeslot(self.provider, NOW + timedelta(days=2), 60, client_id=stranger.pk)
        self.assertFalse(Timeslot.objects.exists())

    def test_start_must_be_in_the_future(self):
        with self.assertRaises(ValidationError) as ctx:
            self.service.create_timeslot(self.provider, NOW, 60)
        self.assertEqual(ctx.exception.field, "start_time")

    def test_duration_bounds(self):
        for duration in (14, 481, 0, "abc"):
            with self.subTest(duration=duration):
                with self.assertRaises(ValidationError) as ctx:
                    self.service.create_timeslot(self.provider, NOW + timedelta(days=1), duration)
                self.assertEqual(ctx.exception.field, "duration_minutes")
        self.service.create_timeslot(self.provider, NOW + timedelta(days=1), 15)
        self.service.create_timeslot(self.provider, NOW + timedelta(days=2), 480)
        self.assertEqual(Timeslot.objects.count(), 2)

    def test_overlap_for_same_provider_fails(self):
        ten = NOW.replace(hour=10) + timedelta(days=1)
        self.service.create_timeslot(self.provider, ten, 60)
        with self.assertRaises(ValidationError) as ctx:
            self.service.create_timeslot(self.provider, ten + timedelta(minutes=30), 60)
        self.assertEqual(ctx.exception.field, "start_time")
        # Different provider, same times
        self.service.create_timeslot(self.other_provider, ten + timedelta(minutes=30), 60)
        self.assertEqual(Timeslot.objects.count(), 2)

    def test_adjacent_timeslots_do_not_overlap(self):
        ten = NOW.replace(hour=10) + timedelta(days=1)
        self.service.create_timeslot(self.provider, ten, 60)
        self.service.create_timeslot(self.provider, ten + timedelta(minutes=60), 60)
        self.service.create_timeslot(self.provider, ten - timedelta(minutes=30), 30)
        self.assertEqual(Timeslot.objects.count(), 3)

    def test_overlap_counts_every_status(self):
        start = NOW + timedelta(days=1)
        make_slot(self.provider, start, client=self.client_user, status=Timeslot.STATUS_COMPLETED)
        with self.assertRaises(ValidationError):
            self.service.create_timeslot(self.provider, start + timedelta(minutes=15), 30)

    def test_enclosing_interval_overlaps(self):
        start = NOW + timedelta(days=1)
        self.service.create_timeslot(self.provider, start + timedelta(minutes=30), 30)
        with self.assertRaises(ValidationError):
            self.service.create_timeslot(self.provider, start, 120)

    def test_client_cannot_create(self):
        with self.assertRaises(PermissionDenied):
            self.service.create_timeslot(self.client_user, NOW + timedelta(days=1), 60)

    def test_admin_creates_on_behalf_of_provider(self):
        slot = self.service.create_timeslot(self.admin, NOW + timedelta(days=1), 60, provider_id=self.provider.pk)
        self.assertEqual(slot.provider, self.provider)

    def test_provider_cannot_create_for_another_provider(self):
        with self.assertRaises(PermissionDenied):
            self.service.create_timeslot(self.provider, NOW + timedelta(days=1), 60, provider_id=self.other_provider.pk)

    def test_admin_cannot_create_for_non_provider(self):
        with self.assertRaises(ValidationError) as ctx:
            self.service.create_timeslot(self.admin, NOW + timedelta(days=1), 60, provider_id=self.client_user.pk)
        self.assertEqual(ctx.exception.field, "provider_id")


class UpdateDurationTests(SchedulingTestMixin, TestCase):
    """Duration change"""

    def setUp(self):
        super().setUp()
        self.start = NOW + timedelta(days=1)
        self.slot = self.service.create_timeslot(self.provider, self.start, 60)
        self.next_slot = self.service.create_timeslot(self.provider, self.start + timedelta(minutes=90), 60)

    def test_shrink_and_grow_within_gap(self):
        self.service.update_duration(self.provider, self.slot.pk, 90)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.duration_minutes, 90)
        self.assertEqual(self.slot.end_time, self.start + timedelta(minutes=90))

    def test_growing_into_neighbour_fails(self):
        with self.assertRaises(ValidationError) as ctx:
            self.service.update_duration(self.provider, self.slot.pk, 120)
        self.assertEqual(ctx.exception.field, "duration_minutes")
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.duration_minutes, 60)

    def test_provider_cannot_change_booked_timeslot(self):
        self.service.book_timeslot(self.client_user, self.slot.pk)
        with self.assertRaises(InvalidStateTransition):
            self.service.update_duration(self.provider, self.slot.pk, 30)
        self.service.update_duration(self.admin, self.slot.pk, 30)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.duration_minutes, 30)

    def test_admin_and_owner_may_change_completed_timeslot(self):
        self.service.book_timeslot(self.client_user, self.slot.pk)
        self.service.complete_timeslot(self.provider, self.slot.pk)

        self.service.update_duration(self.admin, self.slot.pk, 90)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.duration_minutes, 90)
        self.assertTrue(self.slot.is_completed)

        self.service.update_duration(self.provider, self.slot.pk, 45)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.duration_minutes, 45)

        with self.assertRaises(PermissionDenied):
            self.service.update_duration(self.other_provider, self.slot.pk, 30)
        with self.assertRaises(PermissionDenied):
            self.service.update_duration(self.client_user, self.slot.pk, 30)

    def test_other_provider_cannot_change(self):
        with self.assertRaises(PermissionDenied):
            self.service.update_duration(self.other_provider, self.slot.pk, 30)

    def test_missing_timeslot(self):
        with self.assertRaises(NotFound):
            self.service.update_duration(self.provider, 999999, 30)


class BookTimeslotTests(SchedulingTestMixin, TestCase):
    """bookTimeslot"""

    def setUp(self):
        super().setUp()
        self.slot = self.service.create_timeslot(self.provider, NOW + timedelta(days=2), 60)

    def test_book_then_cancel_returns_to_available(self):
        slot = self.service.book_timeslot(self.client_user, self.slot.pk)
        self.assertEqual(slot.status, Timeslot.STATUS_BOOKED)
        self.assertEqual(slot.client_id, self.client_user.pk)

        slot = self.service.cancel_booking(self.client_user, self.slot.pk)
        slot.refresh_from_db()
        self.assertEqual(slot.status, Timeslot.STATUS_AVAILABLE)
        self.assertIsNone(slot.client_id)

    def test_second_booking_conflicts(self):
        self.service.book_timeslot(self.client_user, self.slot.pk)
        with self.assertRaises(BookingConflict):
            self.service.book_timeslot(self.other_client, self.slot.pk)
        self.slot.refresh_from_db()
        self.assertEqual(self.slot.client, self.client_user)

    def test_past_timeslot_conflicts(self):
        self.clock.advance(days=3)
        with self.assertRaises(BookingConflict):
            self.service.book_timeslot(self.client_user, self.slot.pk)

    def test_unlinked_client_is_refused(self):
        stranger = make_user("stranger@test.com", UserProfile.ROLE_CLIENT)
        with self.assertRaises(UnauthorizedRelationship):
            self.service.book_timeslot(stranger, self.slot.pk)

    def test_inactive_link_is_refused(self):
        ProviderClientLink.objects.filter(client=self.client_user).update(status=ProviderClientLink.STATUS_INACTIVE)
        with self.assertRaises(UnauthorizedRelationship):
            self.service.book_timeslot(self.client_user, self.slot.pk)

    def test_client_cannot_book_for_someone_else(self):
        with self.assertRaises(PermissionDenied):
            self.service.book_timeslot(self.client_user, self.slot.pk, client_id=self.other_client.pk)

    def test_other_provider_cannot_book(self):
        with self.assertRaises(PermissionDenied):
            self.service.book_timeslot(self.other_provider, self.slot.pk, client_id=self.client_user.pk)

    def test_missing_timeslot(self):
        with self.assertRaises(NotFound):
            self.service.book_timeslot(self.client_user, 999999)

    def test_provider_assigns_and_reassigns_client(self):
        self.service.book_timeslot(self.provider, self.slot.pk, client_id=self.client_user.pk)
        slot = self.service.book_timeslot(self.provider, self.slot.pk, client_id=self.other_client.pk)
        slot.refresh_from_db()
        self.assertEqual(slot.status, Timeslot.STATUS_BOOKED)
        self.assertEqual(slot.client, self.other_client)

    def test_admin_reassigns_booked_timeslot(self):
        self.service.book_timeslot(self.client_user, self.slot.pk)
        slot = self.service.book_timeslot(self.admin, self.slot.pk, client_id=self.other_client.pk)
        self.assertEqual(slot.client, self.other_client)

    def test_assignment_requires_client_id(self):
        with self.assertRaises(ValidationError) as ctx:
            self.service.book_timeslot(self.provider, self.slot.pk)
        self.assertEqual(ctx.exception.field, "client_id")

    def test_assignment_requires_link(self):
        stranger = make_user("stranger@test.com", UserProfile.ROLE_CLIENT)
        with self.assertRaises(UnauthorizedRelationship):
            self.service.book_timeslot(self.provider, self.slot.pk, client_id=stranger.pk)
        with self.assertRaises(UnauthorizedRelationship):
            self.service.book_timeslot(self.admin, self.slot.pk, client_id=stranger.pk)

    def test_assigning_a_non_client_fails(self):
        with self.assertRaises(ValidationError):
            self.service.book_timeslot(self.provider, self.slot.pk, client_id=self.other_provider.pk)

    def test_completed_timeslot_cannot_be_reassigned(self):
        self.service.book_timeslot(self.client_user, self.slot.pk)
        self.service.complete_timeslot(self.provider, self.slot.pk)
        with self.assertRaises(InvalidStateTransition):
            self.service.book_timeslot(self.provider, self.slot.pk, client_id=self.other_client.pk)

    def test_booking_takes_a_row_lock(self):
        select_for_update = QuerySet.select_for_update
        with mock.patch.object(QuerySet, "select_for_update", autospec=True, side_effect=select_for_update) as lock:
            self.service.book_timeslot(self.client_user, self.slot.pk)
        lock.assert_called_once()
        self.assertEqual(lock.call_args.kwargs, {"nowait": False})
        self.assertIs(lock.call_args.args[0].model, Timeslot)

    @override_settings(BOOKING_LOCK_NOWAIT=True)
    def test_nowait_setting_is_passed_to_the_lock(self):
        select_for_update = QuerySet.select_for_update
        with mock.patch.object(QuerySet, "select_for_update", autospec=True, side_effect=select_for_update) as lock:
            self.service.book_timeslot(self.client_user, self.slot.pk)
        self.assertEqual(lock.call_args.kwargs, {"nowait": True})

    def test_non_numeric_client_id_is_a_validation_error(self):
        with self.assertRaises(ValidationError) as ctx:
            self.service.book_timeslot(self.client_user, self.slot.pk, client_id="abc")
        self.assertEqual(ctx.exception.field, "client_id")

    def test_refusals_are_logged_as_warnings(self):
        stranger = make_user("stranger@test.com", UserProfile.ROLE_CLIENT)
        with self.assertLogs("scheduling.availability", level="WARNING") as logs:
            with self.assertRaises(UnauthorizedRelationship):
                self.service.book_timeslot(stranger, self.slot.pk)
        self.assertIn("book_timeslot", logs.output[0])
        self.assertIn(f"user id={stranger.pk}", logs.output[0])

        self.service.book_timeslot(self.client_user, self.slot.pk)
        with self.assertLogs("scheduling.availability", level="WARNING"):
            with self.assertRaises(BookingConflict):
                self.service.book_timeslot(self.other_client, self.slot.pk)
        with self.assertLogs("scheduling.availability", level="WARNING"):
            with self.assertRaises(InvalidStateTransition):
                self.service.delete_timeslot(self.provider, self.slot.pk)
        with self.assertLogs("scheduling.availability", level="WARNING"):
            with self.assertRaises(PermissionDenied):
                self.service.cancel_booking(self.other_client, self.slot.pk)

    def test_lock_failure_is_logged_as_a_conflict(self):
        with mock.patch.object(AvailabilityService, "_get_timeslot", side_effect=OperationalError("lock wait timeout")):
            with self.assertLogs("scheduling.availability", level="WARNING") as logs:
                with self.assertRaises(BookingConflict):
                    self.service.book_timeslot(self.client_user, self.slot.pk)
        self.assertEqual(len(logs.records), 1)

    def test_lock_failure_is_a_conflict_and_changes_nothing(self):
        with mock.patch.object(AvailabilityService, "_get_timeslot", side_effect=OperationalError("lock wait timeout")):
            with self.assertRaises(BookingConflict):
                self.service.book_timeslot(self.client_user, self.slot.pk)
        self.slot.refresh_from_db()
        self.assertTrue(self.slot.is_available)


class CancelBookingTests(SchedulingTestMixin, TestCase):
    """cancelBooking"""

    def setUp(self):
        super().setUp()
        self.slot = self.service.create_timeslot(self.provider, NOW + timedelta(hours=2), 60)
        self.service.book_timeslot(self.client_user, self.slot.pk)

    def test_client_cannot_cancel_after_start_but_provider_can(self):
        self.clock.advance(hours=3)
        with self.assertRaises(PermissionDenied):
            self.service.cancel_booking(self.client_user, self.slot.pk)
        self.slot.refresh_from_db()
        self.assertTrue(self.slot.is_booked)

        slot = self.service.cancel_booking(self.provider, self.slot.pk)
        self.assertTrue(slot.is_available)
        self.assertIsNone(slot.client_id)

    def test_admin_can_cancel(self):
        slot = self.service.cancel_booking(self.admin, self.slot.pk)
        self.assertTrue(slot.is_available)

    def test_other_client_cannot_cancel(self):
        with self.assertRaises(PermissionDenied):
            self.service.cancel_booking(self.other_client, self.slot.pk)

    def test_cancel_requires_booking(self):
        self.service.cancel_booking(self.client_user, self.slot.pk)
        with self.assertRaises(InvalidStateTransition):
            self.service.cancel_booking(self.provider, self.slot.pk)

    def test_cancelled_timeslot_can_be_booked_again(self):
        self.service.cancel_booking(self.client_user, self.slot.pk)
        slot = self.service.book_timeslot(self.other_client, self.slot.pk)
        self.assertEqual(slot.client, self.other_client)


class CompleteAndDeleteTests(SchedulingTestMixin, TestCase):
    """completeTimeslot and deleteTimeslot"""

    def setUp(self):
        super().setUp()
        self.slot = self.service.create_timeslot(self.provider, NOW + timedelta(days=1), 60)

    def test_complete_requires_booked(self):
        with self.assertRaises(InvalidStateTransition):
            self.service.complete_timeslot(self.provider, self.slot.pk)

    def test_complete_is_terminal(self):
        self.service.book_timeslot(self.client_user, self.slot.pk)
        slot = self.service.complete_timeslot(self.provider, self.slot.pk)
        self.assertTrue(slot.is_completed)
        self.assertEqual(slot.client, self.client_user)
        with self.assertRaises(InvalidStateTransition):
            self.service.complete_timeslot(self.provider, self.slot.pk)
        with self.assertRaises(InvalidStateTransition):
            self.service.cancel_booking(self.provider, self.slot.pk)
        with self.assertRaises(BookingConflict):
            self.service.book_timeslot(self.client_user, self.slot.pk)

    def test_client_cannot_complete(self):
        self.service.book_timeslot(self.client_user, self.slot.pk)
        with self.assertRaises(PermissionDenied):
            self.service.complete_timeslot(self.client_user, self.slot.pk)

    def test_admin_can_complete(self):
        self.service.book_timeslot(self.client_user, self.slot.pk)
        self.assertTrue(self.service.complete_timeslot(self.admin, self.slot.pk).is_completed)

    def test_booked_timeslot_cannot_be_deleted(self):
        self.service.book_timeslot(self.client_user, self.slot.pk)
        with self.assertRaises(InvalidStateTransition):
            self.service.delete_timeslot(self.provider, self.slot.pk)
        self.assertTrue(Timeslot.objects.filter(pk=self.slot.pk).exists())

    def test_available_timeslot_deleted_by_owner(self):
        self.service.delete_timeslot(self.provider, self.slot.pk)
        self.assertFalse(Timeslot.objects.filter(pk=self.slot.pk).exists())

    def test_other_provider_cannot_delete(self):
        with self.assertRaises(PermissionDenied):
            self.service.delete_timeslot(self.other_provider, self.slot.pk)

    def test_admin_deletes_any_timeslot(self):
        self.service.delete_timeslot(self.admin, self.slot.pk)
        self.assertFalse(Timeslot.objects.exists())

    def test_delete_missing_timeslot(self):
        with self.assertRaises(NotFound):
            self.service.delete_timeslot(self.provider, 999999)


class CompletionSweepTests(SchedulingTestMixin, TestCase):
    """Completion sweep"""

    def test_past_booking_is_completed_then_deletable(self):
        slot = self.service.create_timeslot(self.provider, NOW + timedelta(hours=1), 60)
        self.service.book_timeslot(self.client_user, slot.pk)
        self.clock.advance(hours=3)

        self.assertEqual(self.service.complete_past_bookings(), 1)
        slot.refresh_from_db()
        self.assertTrue(slot.is_completed)

        self.service.delete_timeslot(self.provider, slot.pk)
        self.assertFalse(Timeslot.objects.filter(pk=slot.pk).exists())

    def test_sweep_is_idempotent(self):
        make_slot(self.provider, NOW - timedelta(hours=3), client=self.client_user)
        make_slot(self.provider, NOW - timedelta(hours=6), client=self.other_client)
        self.assertEqual(self.service.complete_past_bookings(), 2)
        self.assertEqual(self.service.complete_past_bookings(), 0)

    def test_sweep_leaves_running_and_available_timeslots(self):
        running = make_slot(self.provider, NOW - timedelta(minutes=30), client=self.client_user)
        open_past = make_slot(self.provider, NOW - timedelta(hours=5))
        self.assertEqual(self.service.complete_past_bookings(), 0)
        running.refresh_from_db()
        open_past.refresh_from_db()
        self.assertTrue(running.is_booked)
        self.assertTrue(open_past.is_available)

    def test_management_command(self):
        past = timezone.now() - timedelta(days=1)
        slot = make_slot(self.provider, past, client=self.client_user)
        out = StringIO()
        call_command("complete_past_bookings", stdout=out)
        self.assertIn("Updated 1 booking(s) to completed status", out.getvalue())
        slot.refresh_from_db()
        self.assertTrue(slot.is_completed)

        out = StringIO()
        call_command("complete_past_bookings", stdout=out)
        self.assertIn("Updated 0 booking(s)", out.getvalue())


class ReadProjectionTests(SchedulingTestMixin, TestCase):
    """Listing queries"""

    def setUp(self):
        super().setUp()
        self.unlinked_provider = make_user("unlinked@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.yesterday = make_slot(self.provider, NOW - timedelta(hours=20), client=self.client_user,
                                   status=Timeslot.STATUS_COMPLETED)
        self.open = make_slot(self.provider, NOW + timedelta(days=1))
        self.mine = make_slot(self.provider, NOW + timedelta(days=2), client=self.client_user)
        self.theirs = make_slot(self.provider, NOW + timedelta(days=3), client=self.other_client)
        self.far = make_slot(self.provider, NOW + timedelta(days=30))
        self.unlinked_open = make_slot(self.unlinked_provider, NOW + timedelta(days=1))

    def test_client_calendar(self):
        slots = list(calendar_timeslots(self.client_user, now=NOW))
        self.assertEqual(slots, [self.open, self.mine, self.theirs])

    def test_client_calendar_keeps_own_bookings_with_unlinked_provider(self):
        kept = make_slot(self.unlinked_provider, NOW + timedelta(days=4), client=self.client_user)
        slots = calendar_timeslots(self.client_user, now=NOW)
        self.assertIn(kept, slots)
        self.assertNotIn(self.unlinked_open, slots)

    def test_client_calendar_provider_filter(self):
        slots = calendar_timeslots(self.client_user, provider_id=self.unlinked_provider.pk, now=NOW)
        self.assertNotIn(self.unlinked_open, slots)

    def test_provider_calendar_includes_yesterday(self):
        slots = list(calendar_timeslots(self.provider, now=NOW))
        self.assertEqual(slots, [self.yesterday, self.open, self.mine, self.theirs])

    def test_admin_calendar_sees_everyone(self):
        slots = calendar_timeslots(self.admin, now=NOW)
        self.assertIn(self.unlinked_open, slots)
        self.assertIn(self.open, slots)

    def test_provider_timeslots_filters(self):
        self.assertEqual(list(provider_timeslots(self.provider, status="available", now=NOW)), [self.open, self.far])
        self.assertEqual(list(provider_timeslots(self.provider, status="booked", now=NOW)), [self.mine, self.theirs])
        self.assertEqual(list(provider_timeslots(self.provider, client_id=self.other_client.pk, now=NOW)), [self.theirs])
        day = (NOW + timedelta(days=1)).date()
        self.assertEqual(list(provider_timeslots(self.provider, date=day, now=NOW)), [self.open])

    def test_bookable_timeslots(self):
        slots = bookable_timeslots(provider_id=self.provider.pk, now=NOW)
        self.assertEqual(list(slots), [self.open, self.far])

    def test_bookings_for_each_role(self):
        self.assertEqual(set(bookings_for(self.client_user)), {self.yesterday, self.mine})
        self.assertEqual(list(bookings_for(self.client_user, status="completed")), [self.yesterday])
        self.assertEqual(set(bookings_for(self.provider)), {self.yesterday, self.mine, self.theirs})
        self.assertEqual(bookings_for(self.admin).count(), 3)

    def test_upcoming_bookings(self):
        self.assertEqual(list(upcoming_bookings(self.client_user, now=NOW)), [self.mine])


class AccountDeletionTests(SchedulingTestMixin, TestCase):
    """Deleting users"""

    def test_deleting_client_releases_booked_timeslots(self):
        booked = make_slot(self.provider, NOW + timedelta(days=1), client=self.client_user)
        done = make_slot(self.provider, NOW - timedelta(days=1), client=self.client_user,
                         status=Timeslot.STATUS_COMPLETED)
        Timeslot.objects.filter(pk=booked.pk).update(updated_at=NOW - timedelta(days=30))
        self.client_user.delete()
        booked.refresh_from_db()
        done.refresh_from_db()
        self.assertTrue(booked.is_available)
        self.assertIsNone(booked.client_id)
        self.assertGreater(booked.updated_at, NOW - timedelta(days=30))
        self.assertTrue(done.is_completed)
        self.assertIsNone(done.client_id)

    def test_deleting_provider_removes_timeslots(self):
        make_slot(self.provider, NOW + timedelta(days=1))
        make_slot(self.provider, NOW + timedelta(days=2), client=self.client_user)
        self.provider.delete()
        self.assertFalse(Timeslot.objects.exists())


class BookingRaceTests(TransactionTestCase):
    """Concurrent bookings of one timeslot"""

    def test_only_one_concurrent_booking_succeeds(self):
        provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        clients = [make_user(f"client{i}@test.com", UserProfile.ROLE_CLIENT) for i in range(5)]
        for client in clients:
            link(provider, client)
        slot = make_slot(provider, timezone.now() + timedelta(days=1))

        barrier = threading.Barrier(len(clients))
        results = []
        lock = threading.Lock()

        def attempt(client):
            try:
                barrier.wait()
                try:
                    AvailabilityService().book_timeslot(client, slot.pk)
                    outcome = "booked"
                except BookingConflict:
                    outcome = "conflict"
                with lock:
                    results.append(outcome)
            finally:
                connection.close()

        threads = [threading.Thread(target=attempt, args=(client,)) for client in clients]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results.count("booked"), 1)
        self.assertEqual(results.count("conflict"), len(clients) - 1)
        slot.refresh_from_db()
        self.assertTrue(slot.is_booked)
        self.assertIn(slot.client_id, [c.pk for c in clients])


class TimeslotApiTests(APITestCase):
    """Timeslot API"""

    def setUp(self):
        self.admin = make_user("admin@test.com", UserProfile.ROLE_ADMIN)
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.client_user = make_user("client@test.com", UserProfile.ROLE_CLIENT)
        self.other_client = make_user("other-client@test.com", UserProfile.ROLE_CLIENT)
        link(self.provider, self.client_user)
        link(self.provider, self.other_client)
        self.start = (timezone.now() + timedelta(days=2)).replace(microsecond=0)

    def _create(self, start=None, duration=60, **extra):
        self.client.force_authenticate(user=self.provider)
        payload = {"start_time": (start or self.start).isoformat(), "duration_minutes": duration}
        payload.update(extra)
        return self.client.post(reverse("timeslots_api"), payload, format="json")

    def test_requires_authentication(self):
        response = self.client.get(reverse("timeslots_api"))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_provider_creates_timeslot(self):
        response = self._create()
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["status"], "available")
        self.assertEqual(response.data["provider"]["id"], self.provider.pk)

    def test_create_with_client_is_booked(self):
        response = self._create(client_id=self.client_user.pk)
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["status"], "booked")
        self.assertEqual(response.data["client"]["id"], self.client_user.pk)

    def test_overlap_is_a_field_error(self):
        self._create()
        response = self._create(start=self.start + timedelta(minutes=30))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("start_time", response.data)

    def test_invalid_duration(self):
        response = self._create(duration=500)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("duration_minutes", response.data)

    def test_client_cannot_create(self):
        self.client.force_authenticate(user=self.client_user)
        response = self.client.post(
            reverse("timeslots_api"),
            {"start_time": self.start.isoformat(), "duration_minutes": 60},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_book_cancel_flow(self):
        slot_id = self._create().data["id"]

        self.client.force_authenticate(user=self.client_user)
        response = self.client.post(reverse("book_timeslot_api", args=[slot_id]), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "booked")

        self.client.force_authenticate(user=self.other_client)
        response = self.client.post(reverse("book_timeslot_api", args=[slot_id]), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

        self.client.force_authenticate(user=self.client_user)
        response = self.client.delete(reverse("cancel_booking_api", args=[slot_id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "available")
        self.assertIsNone(response.data["client"])

    def test_unlinked_client_gets_403(self):
        slot_id = self._create().data["id"]
        stranger = make_user("stranger@test.com", UserProfile.ROLE_CLIENT)
        self.client.force_authenticate(user=stranger)
        response = self.client.post(reverse("book_timeslot_api", args=[slot_id]), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_provider_assigns_client(self):
        slot_id = self._create().data["id"]
        response = self.client.post(
            reverse("book_timeslot_api", args=[slot_id]), {"client_id": self.other_client.pk}, format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["client"]["id"], self.other_client.pk)

    def test_complete_and_delete_state_errors(self):
        slot_id = self._create(client_id=self.client_user.pk).data["id"]
        response = self.client.delete(reverse("timeslot_detail_api", args=[slot_id]))
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

        response = self.client.patch(reverse("complete_timeslot_api", args=[slot_id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "completed")

        response = self.client.patch(reverse("complete_timeslot_api", args=[slot_id]))
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

        response = self.client.delete(reverse("timeslot_detail_api", args=[slot_id]))
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

    def test_update_duration(self):
        slot_id = self._create().data["id"]
        response = self.client.patch(
            reverse("timeslot_detail_api", args=[slot_id]), {"duration_minutes": 90}, format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["duration_minutes"], 90)

    def test_timeslot_detail_visibility(self):
        slot_id = self._create().data["id"]
        response = self.client.get(reverse("timeslot_detail_api", args=[slot_id]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["id"], slot_id)

        self.client.force_authenticate(user=self.client_user)
        response = self.client.get(reverse("timeslot_detail_api", args=[slot_id]))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_missing_timeslot_is_404(self):
        self.client.force_authenticate(user=self.client_user)
        response = self.client.post(reverse("book_timeslot_api", args=[999999]), {}, format="json")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_calendar_for_client(self):
        self._create()
        self.client.force_authenticate(user=self.client_user)
        response = self.client.get(reverse("timeslots_api"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data["timeslots"]), 1)
        self.assertEqual([p["id"] for p in response.data["providers"]], [self.provider.pk])

    def test_calendar_for_provider_lists_clients(self):
        self.client.force_authenticate(user=self.provider)
        response = self.client.get(reverse("timeslots_api"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(
            {c["id"] for c in response.data["clients"]},
            {self.client_user.pk, self.other_client.pk},
        )

    def test_bookable_and_bookings_lists(self):
        slot_id = self._create().data["id"]
        self._create(start=self.start + timedelta(hours=2), client_id=self.client_user.pk)

        self.client.force_authenticate(user=self.client_user)
        response = self.client.get(reverse("bookable_timeslots_api"), {"provider_id": self.provider.pk})
        self.assertEqual([s["id"] for s in response.data["timeslots"]], [slot_id])

        response = self.client.get(reverse("bookings_api"))
        self.assertEqual(response.data["total"], 1)

    def test_provider_timeslot_list(self):
        self._create()
        self._create(start=self.start + timedelta(hours=2), client_id=self.client_user.pk)
        response = self.client.get(reverse("provider_timeslots_api"), {"status": "booked"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["total"], 1)

        self.client.force_authenticate(user=self.client_user)
        response = self.client.get(reverse("provider_timeslots_api"))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
