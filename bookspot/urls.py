"""
URL configuration for the Bookspot project.

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/stable/topics/http/urls/
"""

from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    # Admin
    path("admin/", admin.site.urls),

    # API
    path("api/", include("scheduling.api_urls")),
    path("api/", include("accounts.api_urls")),
]
