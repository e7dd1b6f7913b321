"""Booking domain events and the outbox publisher."""

from .booking_events import BookingReminderDue, BookingStatusChanged
from .publisher import EventPublisher

__all__ = ["BookingReminderDue", "BookingStatusChanged", "EventPublisher"]
