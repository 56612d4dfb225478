"""
API endpoints for timeslots and bookings.

Views only parse input and serialize output; every state change goes through
AvailabilityService, whose errors DRF turns into HTTP responses.
"""
from django.core.exceptions import PermissionDenied
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from accounts.models import is_admin, is_client, is_service_provider
from . import policies
from .availability import AvailabilityService
from .queries import (
    bookable_timeslots,
    bookings_for,
    calendar_timeslots,
    calendar_window,
    linked_clients,
    linked_providers,
    provider_timeslots,
    upcoming_bookings,
)
from .serializers import (
    BookTimeslotSerializer,
    TimeslotCreateSerializer,
    TimeslotDurationSerializer,
    TimeslotFilterSerializer,
    TimeslotSerializer,
    UserSummarySerializer,
)


def _filters(request):
    serializer = TimeslotFilterSerializer(data=request.query_params)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def timeslots(request):
    """
    GET  /api/timeslots/  calendar for the current user (?provider_id=)
    POST /api/timeslots/  create a timeslot
    Body: {"start_time": "...", "duration_minutes": 60, "client_id": 5}
    """
    if request.method == 'POST':
        serializer = TimeslotCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        timeslot = AvailabilityService().create_timeslot(request.user, **serializer.validated_data)
        return Response(TimeslotSerializer(timeslot).data, status=status.HTTP_201_CREATED)

    user = request.user
    filters = _filters(request)
    start, end = calendar_window(user)
    slots = calendar_timeslots(user, provider_id=filters.get('provider_id'))

    data = {
        'timeslots': TimeslotSerializer(slots, many=True).data,
        'start_date': start.date().isoformat(),
        'end_date': end.date().isoformat(),
        'selected_provider_id': filters.get('provider_id'),
        'providers': [],
        'clients': [],
        'upcoming': [],
    }
    if is_client(user):
        data['providers'] = UserSummarySerializer(linked_providers(user), many=True).data
        data['upcoming'] = TimeslotSerializer(upcoming_bookings(user), many=True).data
    elif is_service_provider(user) or is_admin(user):
        data['clients'] = UserSummarySerializer(linked_clients(user), many=True).data
    return Response(data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def bookable(request):
    """
    GET /api/timeslots/bookable/?provider_id=&date=
    """
    filters = _filters(request)
    slots = bookable_timeslots(provider_id=filters.get('provider_id'), date=filters.get('date'))
    return Response({
        'timeslots': TimeslotSerializer(slots, many=True).data,
        'total': len(slots),
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def provider_timeslot_list(request):
    """
    GET /api/provider/timeslots/?status=&date=&client_id=
    """
    if not policies.can_view_any(request.user):
        raise PermissionDenied('Only service providers can view their timeslots.')
    filters = _filters(request)
    slots = provider_timeslots(
        request.user,
        status=filters.get('status'),
        date=filters.get('date'),
        client_id=filters.get('client_id'),
    )
    return Response({
        'timeslots': TimeslotSerializer(slots, many=True).data,
        'clients': UserSummarySerializer(linked_clients(request.user), many=True).data,
        'total': len(slots),
    })


@api_view(['GET', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def timeslot_detail(request, timeslot_id):
    """
    GET    /api/timeslots/{id}/
    PATCH  /api/timeslots/{id}/  change the duration
    DELETE /api/timeslots/{id}/  delete an available or completed timeslot
    """
    service = AvailabilityService()
    if request.method == 'GET':
        return Response(TimeslotSerializer(service.get_timeslot(request.user, timeslot_id)).data)
    if request.method == 'DELETE':
        service.delete_timeslot(request.user, timeslot_id)
        return Response(status=status.HTTP_204_NO_CONTENT)

    serializer = TimeslotDurationSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    timeslot = service.update_duration(request.user, timeslot_id, serializer.validated_data['duration_minutes'])
    return Response(TimeslotSerializer(timeslot).data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def book(request, timeslot_id):
    """
    POST /api/timeslots/{id}/book/
    Body (provider/admin only): {"client_id": 5}
    """
    serializer = BookTimeslotSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    timeslot = AvailabilityService().book_timeslot(
        request.user, timeslot_id, client_id=serializer.validated_data.get('client_id'),
    )
    return Response(TimeslotSerializer(timeslot).data)


@api_view(['DELETE'])
@permission_classes([IsAuthenticated])
def cancel_booking(request, timeslot_id):
    """
    DELETE /api/timeslots/{id}/booking/
    """
    timeslot = AvailabilityService().cancel_booking(request.user, timeslot_id)
    return Response(TimeslotSerializer(timeslot).data)


@api_view(['PATCH'])
@permission_classes([IsAuthenticated])
def complete(request, timeslot_id):
    """
    PATCH /api/timeslots/{id}/complete/
    """
    timeslot = AvailabilityService().complete_timeslot(request.user, timeslot_id)
    return Response(TimeslotSerializer(timeslot).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def bookings(request):
    """
    GET /api/bookings/?status=booked|completed
    """
    filters = _filters(request)
    slots = bookings_for(request.user, status=filters.get('status'))
    return Response({
        'bookings': TimeslotSerializer(slots, many=True).data,
        'total': len(slots),
    })
