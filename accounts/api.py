"""
API endpoints for a provider's client list
"""
from django.core.exceptions import PermissionDenied
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from scheduling.queries import linked_clients
from scheduling.serializers import UserSummarySerializer
from .links import add_client, remove_client, update_client
from .policies import can_view_any_clients
from .serializers import ClientSerializer


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def clients(request):
    """
    GET  /api/provider/clients/
    POST /api/provider/clients/  Body: {"name": "...", "email": "..."}
    """
    if request.method == 'POST':
        serializer = ClientSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        client = add_client(request.user, serializer.validated_data['email'], serializer.validated_data['name'])
        return Response(UserSummarySerializer(client).data, status=status.HTTP_201_CREATED)

    if not can_view_any_clients(request.user):
        raise PermissionDenied('Only service providers can view clients.')
    users = linked_clients(request.user)
    return Response({
        'clients': UserSummarySerializer(users, many=True).data,
        'total': len(users),
    })


@api_view(['PUT', 'DELETE'])
@permission_classes([IsAuthenticated])
def client_detail(request, client_id):
    """
    PUT    /api/provider/clients/{id}/  Body: {"name": "...", "email": "..."}
    DELETE /api/provider/clients/{id}/  unlink and release the client's future bookings
    """
    if request.method == 'DELETE':
        released = remove_client(request.user, client_id)
        return Response({'status': 'success', 'released_timeslots': released})

    serializer = ClientSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    client = update_client(request.user, client_id, serializer.validated_data['name'], serializer.validated_data['email'])
    return Response(UserSummarySerializer(client).data)
