"""
Authorization predicates for provider/client relationships.
"""
from .models import is_admin, is_service_provider, has_client


def can_view_any_clients(user):
    return is_service_provider(user) or is_admin(user)


def can_view_client(user, client):
    if is_admin(user):
        return True
    if is_service_provider(user):
        return has_client(user, client.pk)
    return False


def can_create_client(user):
    return is_service_provider(user) or is_admin(user)


def can_delete_client(user, client):
    if is_admin(user):
        return True
    if is_service_provider(user):
        return has_client(user, client.pk)
    return False
