"""
URL routes for the timeslot and booking API
"""
from django.urls import path
from . import api

urlpatterns = [
    path('timeslots/', api.timeslots, name='timeslots_api'),
    path('timeslots/bookable/', api.bookable, name='bookable_timeslots_api'),
    path('timeslots/<int:timeslot_id>/', api.timeslot_detail, name='timeslot_detail_api'),
    path('timeslots/<int:timeslot_id>/book/', api.book, name='book_timeslot_api'),
    path('timeslots/<int:timeslot_id>/booking/', api.cancel_booking, name='cancel_booking_api'),
    path('timeslots/<int:timeslot_id>/complete/', api.complete, name='complete_timeslot_api'),
    path('provider/timeslots/', api.provider_timeslot_list, name='provider_timeslots_api'),
    path('bookings/', api.bookings, name='bookings_api'),
]
