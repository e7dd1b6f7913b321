"""Booking domain events delivered to downstream collaborators."""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class BookingStatusChanged:
    """Fired whenever the state machine commits a status change."""

    booking_id: str
    previous_status: Optional[str]  # None for the creation record
    new_status: str
    actor: str
    occurred_at: datetime
    version: int
    triggering_event_id: Optional[str] = None

    event_type = "booking.status_changed"

    def idempotency_key(self) -> str:
        return f"{self.event_type}:{self.booking_id}:{self.version}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingReminderDue:
    """Fired once when a confirmed booking enters the reminder window."""

    booking_id: str
    provider_id: str
    customer_id: str
    scheduled_start: datetime

    event_type = "booking.reminder_due"

    def idempotency_key(self) -> str:
        return f"{self.event_type}:{self.booking_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
