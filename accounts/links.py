"""
Provider/client link management: adding, editing and removing a provider's clients.
"""
import logging

from django.contrib.auth import get_user_model
from django.core.exceptions import PermissionDenied
from django.db import transaction
from django.db.models import Q
from django.utils import timezone

from scheduling.exceptions import NotFound, ValidationError
from scheduling.models import Timeslot
from .models import UserProfile, ProviderClientLink, active_links, is_client
from .policies import can_create_client, can_delete_client, can_view_any_clients, can_view_client

logger = logging.getLogger(__name__)


def _normalize_email(email):
    email = (email or '').strip().lower()
    if not email:
        raise ValidationError('email', 'The email is required.')
    return email


def _email_taken(email, exclude_pk=None):
    User = get_user_model()
    users = User.objects.filter(Q(email__iexact=email) | Q(username__iexact=email))
    if exclude_pk is not None:
        users = users.exclude(pk=exclude_pk)
    return users.first()


def _get_linked_client(provider, client_id, allowed):
    User = get_user_model()
    try:
        client = User.objects.select_related('profile').get(pk=client_id)
    except (User.DoesNotExist, ValueError, TypeError):
        raise NotFound('Client not found.')
    if not allowed(provider, client):
        raise NotFound('This client is not linked to your account.')
    return client


def add_client(provider, email, name=''):
    """
    Link a client to the provider.

    An existing client account with this email is linked as is; otherwise a
    new client account without a usable password is created first.
    """
    if not can_create_client(provider):
        raise PermissionDenied('Only service providers can add clients.')
    email = _normalize_email(email)

    with transaction.atomic():
        existing = _email_taken(email)
        if existing is not None:
            if not is_client(existing):
                raise ValidationError('email', 'A user with this email already exists with a different role.')
            link = ProviderClientLink.objects.filter(provider=provider, client=existing).first()
            if link is not None and link.status == ProviderClientLink.STATUS_ACTIVE:
                raise ValidationError('email', 'This client is already linked to your account.')
            if link is not None:
                link.status = ProviderClientLink.STATUS_ACTIVE
                link.save(update_fields=['status', 'updated_at'])
            else:
                ProviderClientLink.objects.create(provider=provider, client=existing, created_by_provider=True)
            client = existing
        else:
            User = get_user_model()
            client = User.objects.create_user(username=email, email=email, first_name=(name or '').strip())
            UserProfile.objects.create(user=client, role=UserProfile.ROLE_CLIENT)
            ProviderClientLink.objects.create(provider=provider, client=client, created_by_provider=True)

    logger.info("Client id=%s linked to provider id=%s", client.pk, provider.pk)
    return client


def update_client(provider, client_id, name, email):
    if not can_view_any_clients(provider):
        raise PermissionDenied('Only service providers can edit clients.')
    client = _get_linked_client(provider, client_id, can_view_client)
    email = _normalize_email(email)

    if email != (client.email or '').lower() and _email_taken(email, exclude_pk=client.pk):
        raise ValidationError('email', 'A user with this email already exists.')

    if client.username.lower() == (client.email or '').lower():
        client.username = email
    client.email = email
    client.first_name = (name or '').strip()
    client.save(update_fields=['username', 'email', 'first_name'])
    logger.info("Client id=%s updated by provider id=%s", client.pk, provider.pk)
    return client


def remove_client(provider, client_id, now=None):
    """
    Unlink a client from the provider.

    The client's future bookings with this provider are released back to
    `available`. Returns how many timeslots were released.
    """
    if not can_view_any_clients(provider):
        raise PermissionDenied('Only service providers can remove clients.')
    client = _get_linked_client(provider, client_id, can_delete_client)

    now = now or timezone.now()
    with transaction.atomic():
        link = active_links().filter(provider=provider, client=client).first()
        if link is None:
            raise NotFound('This client is not linked to your account.')

        released = (
            Timeslot.objects.for_provider(provider)
            .future(now)
            .booked()
            .for_client(client)
            .update(status=Timeslot.STATUS_AVAILABLE, client=None, updated_at=now)
        )
        link.delete()

    logger.info(
        "Client id=%s unlinked from provider id=%s, %s future booking(s) released",
        client.pk, provider.pk, released,
    )
    return released
