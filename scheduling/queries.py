"""
Read projections over timeslots for the listing endpoints.

These never write; each one returns a queryset (or list) already scoped to
what the given user is allowed to see.
"""
from datetime import datetime, time, timedelta

from django.conf import settings
from django.contrib.auth import get_user_model
from django.utils import timezone

from accounts.models import (
    UserProfile,
    active_links,
    is_admin,
    is_client,
    is_service_provider,
    linked_provider_ids,
)
from .models import Timeslot


def _start_of_day(moment):
    return timezone.make_aware(datetime.combine(timezone.localdate(moment), time.min))


def _end_of_day(moment):
    return timezone.make_aware(datetime.combine(timezone.localdate(moment), time.max))


def calendar_window(user, now=None):
    """
    Date range of the calendar.

    Clients look ahead from the current moment; providers and admins also
    see yesterday so recent sessions can still be managed.
    """
    now = now or timezone.now()
    days_ahead = getattr(settings, 'BOOKSPOT_CALENDAR_DAYS_AHEAD', 14)
    end = _end_of_day(now + timedelta(days=days_ahead))
    if is_client(user):
        return now, end
    return _start_of_day(now - timedelta(days=1)), end


def calendar_timeslots(user, provider_id=None, now=None):
    start, end = calendar_window(user, now)
    base = Timeslot.objects.select_related('provider', 'client').filter(start_time__range=(start, end))

    if is_client(user):
        provider_ids = list(linked_provider_ids(user))
        linked = base.none()
        if provider_ids:
            if provider_id is not None and int(provider_id) in provider_ids:
                linked = base.filter(provider_id=provider_id)
            else:
                linked = base.for_providers(provider_ids)
        own = base.for_client(user)
        if provider_id is not None:
            own = own.filter(provider_id=provider_id)
        return (linked | own).distinct().order_by('start_time')

    if is_service_provider(user):
        return base.for_provider(user).order_by('start_time')

    if is_admin(user):
        return base.order_by('start_time')

    return base.none()


def provider_timeslots(provider, status=None, date=None, client_id=None, now=None):
    """Upcoming timeslots of one provider with the provider dashboard filters."""
    queryset = (
        Timeslot.objects.select_related('client')
        .for_provider(provider)
        .future(now)
    )
    if status == Timeslot.STATUS_AVAILABLE:
        queryset = queryset.available(now)
    elif status == Timeslot.STATUS_BOOKED:
        queryset = queryset.booked()
    if date:
        queryset = queryset.on_date(date)
    if client_id:
        queryset = queryset.filter(client_id=client_id)
    return queryset.order_by('start_time')


def bookable_timeslots(provider_id=None, date=None, now=None):
    queryset = Timeslot.objects.select_related('provider').available(now)
    if provider_id:
        queryset = queryset.filter(provider_id=provider_id)
    if date:
        queryset = queryset.on_date(date)
    return queryset.order_by('start_time')


def bookings_for(user, status=None):
    """Booked and completed timeslots visible to the user, newest first."""
    queryset = Timeslot.objects.select_related('provider', 'client').exclude(status=Timeslot.STATUS_AVAILABLE)
    if is_client(user):
        queryset = queryset.for_client(user)
    elif is_service_provider(user):
        queryset = queryset.for_provider(user)
    elif not is_admin(user):
        return queryset.none()

    if status == Timeslot.STATUS_BOOKED:
        queryset = queryset.booked()
    elif status == Timeslot.STATUS_COMPLETED:
        queryset = queryset.completed()
    return queryset.order_by('-start_time')


def upcoming_bookings(client, now=None):
    now = now or timezone.now()
    days = getattr(settings, 'BOOKSPOT_UPCOMING_NOTICE_DAYS', 3)
    return (
        Timeslot.objects.select_related('provider')
        .for_client(client)
        .booked()
        .filter(start_time__range=(now, now + timedelta(days=days)))
        .order_by('start_time')
    )


def linked_clients(provider):
    """Clients of a provider; admins get every client account."""
    User = get_user_model()
    if is_admin(provider):
        return User.objects.filter(profile__role=UserProfile.ROLE_CLIENT).order_by('first_name', 'username')
    client_ids = active_links().filter(provider=provider).values_list('client_id', flat=True)
    return User.objects.filter(pk__in=client_ids).order_by('first_name', 'username')


def linked_providers(client):
    User = get_user_model()
    return User.objects.filter(pk__in=linked_provider_ids(client)).order_by('first_name', 'username')
