from django.contrib.auth import get_user_model
from rest_framework import serializers

from accounts.models import display_name
from .models import Timeslot


class UserSummarySerializer(serializers.ModelSerializer):
    name = serializers.SerializerMethodField()

    class Meta:
        model = get_user_model()
        fields = ['id', 'name', 'email']

    def get_name(self, user):
        return display_name(user)


class TimeslotSerializer(serializers.ModelSerializer):
    provider = UserSummarySerializer(read_only=True)
    client = UserSummarySerializer(read_only=True)

    class Meta:
        model = Timeslot
        fields = ['id', 'provider', 'client', 'start_time', 'duration_minutes', 'end_time', 'status',
                  'is_available', 'is_booked', 'is_completed', 'created_at', 'updated_at']
        read_only_fields = fields


class TimeslotCreateSerializer(serializers.Serializer):
    start_time = serializers.DateTimeField()
    duration_minutes = serializers.IntegerField()
    client_id = serializers.IntegerField(required=False, allow_null=True)
    provider_id = serializers.IntegerField(required=False, allow_null=True)


class TimeslotDurationSerializer(serializers.Serializer):
    duration_minutes = serializers.IntegerField()


class BookTimeslotSerializer(serializers.Serializer):
    client_id = serializers.IntegerField(required=False, allow_null=True)


class TimeslotFilterSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Timeslot.STATUS_CHOICES, required=False)
    date = serializers.DateField(required=False)
    provider_id = serializers.IntegerField(required=False)
    client_id = serializers.IntegerField(required=False)
