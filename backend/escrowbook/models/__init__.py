"""
Database models for the escrow booking core.

- Offering with its weekly schedule and date exceptions
- Booking, its transition history and escrow mirror
- Ledger event log and monitor cursor
- Status-change outbox
"""

from .booking import (
    COMMITTED_STATUSES,
    SLOT_HOLDING_STATUSES,
    TERMINAL_STATUSES,
    Booking,
    BookingStatus,
    BookingTransition,
)
from .escrow import EscrowRecord, EscrowStatus
from .event_outbox import EventOutbox, EventOutboxStatus
from .ledger_event import LedgerCursor, LedgerEvent, LedgerEventStatus
from .offering import Offering, OfferingScheduleDay, OfferingScheduleException

__all__ = [
    "Booking",
    "BookingStatus",
    "BookingTransition",
    "COMMITTED_STATUSES",
    "SLOT_HOLDING_STATUSES",
    "TERMINAL_STATUSES",
    "EscrowRecord",
    "EscrowStatus",
    "EventOutbox",
    "EventOutboxStatus",
    "LedgerCursor",
    "LedgerEvent",
    "LedgerEventStatus",
    "Offering",
    "OfferingScheduleDay",
    "OfferingScheduleException",
]
