from django.contrib import admin
from .models import Timeslot


@admin.register(Timeslot)
class TimeslotAdmin(admin.ModelAdmin):
    list_display = ['provider', 'client', 'start_time', 'duration_minutes', 'end_time', 'status']
    list_filter = ['status', 'start_time']
    search_fields = ['provider__username', 'client__username', 'client__email']
    readonly_fields = ['end_time', 'created_at', 'updated_at']
