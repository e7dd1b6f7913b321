# backend/escrowbook/core/enums.py
"""
Core enums for the escrow booking core.

Booking statuses live with the Booking model; these enums cover the
actors, ledger vocabulary and availability reasons shared across layers.
"""

from enum import Enum


class ActorRole(str, Enum):
    """Who is asking for a booking change."""

    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"
    SCHEDULER = "scheduler"
    LEDGER = "ledger"

    @property
    def is_automated(self) -> bool:
        return self in (ActorRole.SCHEDULER, ActorRole.LEDGER)


class LedgerSigner(str, Enum):
    """Key that signs a ledger call."""

    CUSTOMER = "customer"
    PLATFORM = "platform"


class LedgerOperation(str, Enum):
    DEPOSIT = "deposit"
    COMPLETE = "complete"
    EMERGENCY_CANCEL = "emergency_cancel"


class LedgerEventKind(str, Enum):
    """Escrow contract events consumed by the monitor."""

    FUNDED = "Funded"
    SERVICE_COMPLETED = "ServiceCompleted"
    BOOKING_CANCELLED = "BookingCancelled"


class DayUnavailableReason(str, Enum):
    """Why a date in the month view has no bookable slot."""

    NO_SERVICE_HOURS = "no_service_hours"
    FULLY_BOOKED = "fully_booked"
    CALENDAR_CONFLICT = "calendar_conflict"
    PAST_CUTOFF = "past_cutoff"


class SlotUnavailableReason(str, Enum):
    """Why a single slot in the day view is blocked."""

    BOOKED = "booked"
    CALENDAR_CONFLICT = "calendar_conflict"
    PAST_CUTOFF = "past_cutoff"
