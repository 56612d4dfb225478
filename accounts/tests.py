"""
Tests for roles, provider/client links and the client management API
"""
from datetime import timedelta

from django.contrib.auth.models import User
from django.core.exceptions import PermissionDenied
from django.db import IntegrityError, transaction
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from scheduling.exceptions import NotFound, ValidationError
from scheduling.models import Timeslot
from .links import add_client, remove_client, update_client
from .models import (
    UserProfile,
    ProviderClientLink,
    has_client,
    has_provider,
    is_admin,
    is_client,
    is_service_provider,
    role_of,
)
from .policies import can_create_client, can_delete_client, can_view_any_clients, can_view_client


def make_user(username, role=None, **extra):
    user = User.objects.create_user(username=username, email=username, password="testpass123", **extra)
    if role:
        UserProfile.objects.create(user=user, role=role)
    return user


class RoleTests(TestCase):
    """Role lookups"""

    def test_roles_come_from_profile(self):
        provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        client = make_user("client@test.com", UserProfile.ROLE_CLIENT)
        self.assertTrue(is_service_provider(provider))
        self.assertFalse(is_client(provider))
        self.assertTrue(is_client(client))
        self.assertFalse(is_admin(client))

    def test_superuser_is_admin_without_profile(self):
        root = User.objects.create_superuser(username="root", email="root@test.com", password="testpass123")
        self.assertTrue(is_admin(root))

    def test_user_without_profile_has_no_role(self):
        self.assertIsNone(role_of(make_user("nobody@test.com")))


class ProviderClientLinkTests(TestCase):
    """ProviderClientLink model"""

    def setUp(self):
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.client_user = make_user("client@test.com", UserProfile.ROLE_CLIENT)

    def test_pair_is_unique(self):
        ProviderClientLink.objects.create(provider=self.provider, client=self.client_user)
        with self.assertRaises(IntegrityError):
            with transaction.atomic():
                ProviderClientLink.objects.create(provider=self.provider, client=self.client_user)

    def test_only_active_links_count(self):
        link = ProviderClientLink.objects.create(provider=self.provider, client=self.client_user)
        self.assertTrue(has_client(self.provider, self.client_user.pk))
        self.assertTrue(has_provider(self.client_user, self.provider.pk))

        link.status = ProviderClientLink.STATUS_INACTIVE
        link.save()
        self.assertFalse(has_client(self.provider, self.client_user.pk))
        self.assertFalse(has_provider(self.client_user, self.provider.pk))

    def test_link_is_directional(self):
        ProviderClientLink.objects.create(provider=self.provider, client=self.client_user)
        self.assertFalse(has_client(self.client_user, self.provider.pk))


class ClientPolicyTests(TestCase):
    """Client relationship predicates"""

    def setUp(self):
        self.admin = make_user("admin@test.com", UserProfile.ROLE_ADMIN)
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.client_user = make_user("client@test.com", UserProfile.ROLE_CLIENT)
        self.stranger = make_user("stranger@test.com", UserProfile.ROLE_CLIENT)
        ProviderClientLink.objects.create(provider=self.provider, client=self.client_user)

    def test_provider_sees_only_linked_clients(self):
        self.assertTrue(can_view_client(self.provider, self.client_user))
        self.assertFalse(can_view_client(self.provider, self.stranger))
        self.assertTrue(can_delete_client(self.provider, self.client_user))
        self.assertFalse(can_delete_client(self.provider, self.stranger))

    def test_admin_passes_every_check(self):
        self.assertTrue(can_view_any_clients(self.admin))
        self.assertTrue(can_view_client(self.admin, self.stranger))
        self.assertTrue(can_delete_client(self.admin, self.stranger))
        self.assertTrue(can_create_client(self.admin))

    def test_client_cannot_manage_clients(self):
        self.assertFalse(can_view_any_clients(self.client_user))
        self.assertFalse(can_create_client(self.client_user))
        self.assertFalse(can_view_client(self.client_user, self.stranger))


class AddClientTests(TestCase):
    """add_client"""

    def setUp(self):
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)

    def test_creates_client_account_and_link(self):
        client = add_client(self.provider, "  New.Client@Test.com ", "New Client")
        self.assertEqual(client.email, "new.client@test.com")
        self.assertEqual(client.username, "new.client@test.com")
        self.assertEqual(client.first_name, "New Client")
        self.assertFalse(client.has_usable_password())
        self.assertTrue(is_client(client))
        self.assertTrue(has_client(self.provider, client.pk))

    def test_links_existing_client(self):
        existing = make_user("client@test.com", UserProfile.ROLE_CLIENT)
        client = add_client(self.provider, "client@test.com")
        self.assertEqual(client, existing)
        self.assertEqual(User.objects.filter(email="client@test.com").count(), 1)
        self.assertTrue(has_client(self.provider, existing.pk))

    def test_existing_user_with_other_role_is_refused(self):
        make_user("other-provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        with self.assertRaises(ValidationError) as ctx:
            add_client(self.provider, "other-provider@test.com")
        self.assertEqual(ctx.exception.field, "email")

    def test_duplicate_link_is_refused(self):
        add_client(self.provider, "client@test.com")
        with self.assertRaises(ValidationError):
            add_client(self.provider, "client@test.com")

    def test_inactive_link_is_reactivated(self):
        client = make_user("client@test.com", UserProfile.ROLE_CLIENT)
        ProviderClientLink.objects.create(
            provider=self.provider, client=client, status=ProviderClientLink.STATUS_INACTIVE,
        )
        add_client(self.provider, "client@test.com")
        self.assertEqual(ProviderClientLink.objects.filter(provider=self.provider, client=client).count(), 1)
        self.assertTrue(has_client(self.provider, client.pk))

    def test_client_cannot_add_clients(self):
        client = make_user("client@test.com", UserProfile.ROLE_CLIENT)
        with self.assertRaises(PermissionDenied):
            add_client(client, "someone@test.com")

    def test_email_is_required(self):
        with self.assertRaises(ValidationError):
            add_client(self.provider, "   ")


class UpdateClientTests(TestCase):
    """update_client"""

    def setUp(self):
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.client_user = add_client(self.provider, "client@test.com", "Client")

    def test_updates_name_email_and_username(self):
        client = update_client(self.provider, self.client_user.pk, "Renamed", "renamed@test.com")
        client.refresh_from_db()
        self.assertEqual(client.first_name, "Renamed")
        self.assertEqual(client.email, "renamed@test.com")
        self.assertEqual(client.username, "renamed@test.com")

    def test_email_must_be_unique(self):
        make_user("taken@test.com", UserProfile.ROLE_CLIENT)
        with self.assertRaises(ValidationError) as ctx:
            update_client(self.provider, self.client_user.pk, "Client", "taken@test.com")
        self.assertEqual(ctx.exception.field, "email")

    def test_unlinked_client_is_not_found(self):
        stranger = make_user("stranger@test.com", UserProfile.ROLE_CLIENT)
        with self.assertRaises(NotFound):
            update_client(self.provider, stranger.pk, "Name", "stranger@test.com")


class RemoveClientTests(TestCase):
    """remove_client"""

    def setUp(self):
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.other_provider = make_user("other-provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.client_user = add_client(self.provider, "client@test.com")
        add_client(self.other_provider, "client@test.com")
        now = timezone.now()
        self.future = Timeslot.objects.create(
            provider=self.provider, client=self.client_user, status=Timeslot.STATUS_BOOKED,
            start_time=now + timedelta(days=1), duration_minutes=60,
        )
        self.past = Timeslot.objects.create(
            provider=self.provider, client=self.client_user, status=Timeslot.STATUS_BOOKED,
            start_time=now - timedelta(days=1), duration_minutes=60,
        )
        self.elsewhere = Timeslot.objects.create(
            provider=self.other_provider, client=self.client_user, status=Timeslot.STATUS_BOOKED,
            start_time=now + timedelta(days=1), duration_minutes=60,
        )

    def test_releases_future_bookings_with_this_provider_only(self):
        released = remove_client(self.provider, self.client_user.pk)
        self.assertEqual(released, 1)
        self.assertFalse(has_client(self.provider, self.client_user.pk))

        self.future.refresh_from_db()
        self.past.refresh_from_db()
        self.elsewhere.refresh_from_db()
        self.assertTrue(self.future.is_available)
        self.assertIsNone(self.future.client_id)
        self.assertTrue(self.past.is_booked)
        self.assertTrue(self.elsewhere.is_booked)
        self.assertTrue(has_client(self.other_provider, self.client_user.pk))

    def test_released_timeslots_are_touched(self):
        stale = timezone.now() - timedelta(days=30)
        Timeslot.objects.update(updated_at=stale)
        remove_client(self.provider, self.client_user.pk)
        self.future.refresh_from_db()
        self.past.refresh_from_db()
        self.assertGreater(self.future.updated_at, stale)
        self.assertEqual(self.past.updated_at, stale)

    def test_client_account_survives(self):
        remove_client(self.provider, self.client_user.pk)
        self.assertTrue(User.objects.filter(pk=self.client_user.pk).exists())

    def test_unlinked_client_is_not_found(self):
        remove_client(self.provider, self.client_user.pk)
        with self.assertRaises(NotFound):
            remove_client(self.provider, self.client_user.pk)


class ClientApiTests(APITestCase):
    """Client management API"""

    def setUp(self):
        self.provider = make_user("provider@test.com", UserProfile.ROLE_SERVICE_PROVIDER)
        self.client_user = add_client(self.provider, "client@test.com", "Anna")
        self.client.force_authenticate(user=self.provider)

    def test_list_clients(self):
        response = self.client.get(reverse("provider_clients_api"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["total"], 1)
        self.assertEqual(response.data["clients"][0]["name"], "Anna")

    def test_add_client(self):
        response = self.client.post(
            reverse("provider_clients_api"), {"name": "Boris", "email": "boris@test.com"}, format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["email"], "boris@test.com")

    def test_add_duplicate_client(self):
        response = self.client.post(reverse("provider_clients_api"), {"email": "client@test.com"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("email", response.data)

    def test_invalid_email(self):
        response = self.client.post(reverse("provider_clients_api"), {"email": "not-an-email"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_update_client(self):
        response = self.client.put(
            reverse("provider_client_detail_api", args=[self.client_user.pk]),
            {"name": "Anna K", "email": "anna@test.com"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["email"], "anna@test.com")

    def test_remove_client(self):
        response = self.client.delete(reverse("provider_client_detail_api", args=[self.client_user.pk]))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["released_timeslots"], 0)

        response = self.client.delete(reverse("provider_client_detail_api", args=[self.client_user.pk]))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_client_cannot_list_clients(self):
        self.client.force_authenticate(user=self.client_user)
        response = self.client.get(reverse("provider_clients_api"))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
