"""
Errors raised by the availability engine.

They are DRF API exceptions, so the API layer needs no translation: raising
one from a view produces the matching HTTP status and a JSON body.
"""
from rest_framework import status
from rest_framework.exceptions import APIException


class SchedulingError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'The request could not be processed.'
    default_code = 'scheduling_error'


class ValidationError(SchedulingError):
    """Malformed input. `detail` maps field names to messages."""
    default_detail = 'Invalid input.'
    default_code = 'invalid'

    def __init__(self, field, message):
        self.field = field
        self.message = message
        super().__init__({field: [message]})


class UnauthorizedRelationship(SchedulingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'The client and provider are not linked.'
    default_code = 'unauthorized_relationship'


class BookingConflict(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Unable to book this timeslot. It may have already been booked.'
    default_code = 'booking_conflict'


class NotFound(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Not found.'
    default_code = 'not_found'


class InvalidStateTransition(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This action is not allowed in the current timeslot state.'
    default_code = 'invalid_state_transition'
