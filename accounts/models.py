from django.conf import settings
from django.db import models


class UserProfile(models.Model):
    """Role and timezone of a user (admin / service provider / client)"""
    ROLE_ADMIN = 'admin'
    ROLE_SERVICE_PROVIDER = 'service_provider'
    ROLE_CLIENT = 'client'
    ROLE_CHOICES = [
        (ROLE_ADMIN, 'Admin'),
        (ROLE_SERVICE_PROVIDER, 'Service provider'),
        (ROLE_CLIENT, 'Client'),
    ]

    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='profile')
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, verbose_name='Role')
    timezone = models.CharField(max_length=64, default='UTC', verbose_name='Timezone')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.user.username} ({self.get_role_display()})"


class ProviderClientLink(models.Model):
    """Link between a service provider and a client who may book the provider's timeslots"""
    STATUS_ACTIVE = 'active'
    STATUS_INACTIVE = 'inactive'
    STATUS_CHOICES = [
        (STATUS_ACTIVE, 'Active'),
        (STATUS_INACTIVE, 'Inactive'),
    ]

    provider = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='client_links')
    client = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='provider_links')
    created_by_provider = models.BooleanField(default=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_ACTIVE, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['provider', 'client'], name='unique_provider_client_link'),
        ]

    def __str__(self):
        return f"{self.provider.username} -> {self.client.username} ({self.status})"


def role_of(user):
    """Role of the user; superusers count as admins even without a profile."""
    if user is None or not getattr(user, 'is_authenticated', False):
        return None
    if user.is_superuser:
        return UserProfile.ROLE_ADMIN
    try:
        return user.profile.role
    except UserProfile.DoesNotExist:
        return None


def is_admin(user):
    return role_of(user) == UserProfile.ROLE_ADMIN


def is_service_provider(user):
    return role_of(user) == UserProfile.ROLE_SERVICE_PROVIDER


def is_client(user):
    return role_of(user) == UserProfile.ROLE_CLIENT


def display_name(user):
    return user.get_full_name() or user.username


def active_links():
    return ProviderClientLink.objects.filter(status=ProviderClientLink.STATUS_ACTIVE)


def has_client(provider, client_id):
    """Provider has an active link to the client."""
    return active_links().filter(provider=provider, client_id=client_id).exists()


def has_provider(client, provider_id):
    """Client has an active link to the provider."""
    return active_links().filter(client=client, provider_id=provider_id).exists()


def linked_provider_ids(client):
    return active_links().filter(client=client).values_list('provider_id', flat=True)
