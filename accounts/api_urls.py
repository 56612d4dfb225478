"""
URL routes for the provider client-management API
"""
from django.urls import path
from . import api

urlpatterns = [
    path('provider/clients/', api.clients, name='provider_clients_api'),
    path('provider/clients/<int:client_id>/', api.client_detail, name='provider_client_detail_api'),
]
