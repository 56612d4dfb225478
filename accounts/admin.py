from django.contrib import admin
from .models import UserProfile, ProviderClientLink


@admin.register(UserProfile)
class UserProfileAdmin(admin.ModelAdmin):
    list_display = ['user', 'role', 'timezone', 'created_at']
    list_filter = ['role', 'created_at']
    search_fields = ['user__username', 'user__email']


@admin.register(ProviderClientLink)
class ProviderClientLinkAdmin(admin.ModelAdmin):
    list_display = ['provider', 'client', 'status', 'created_by_provider', 'created_at']
    list_filter = ['status', 'created_by_provider', 'created_at']
    search_fields = ['provider__username', 'client__username', 'client__email']
