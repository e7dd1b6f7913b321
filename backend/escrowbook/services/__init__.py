"""
Service layer for the escrow booking core.

Services own transactions and business rules; repositories only read and
write rows.
"""

from .availability_service import AvailabilityService
from .base import BaseService
from .booking_scheduler import BookingScheduler, TickResult
from .booking_service import BookingActionResult, BookingService
from .booking_state_machine import BookingStateMachine, TransitionResult
from .cache_service import CacheService, get_cache_service
from .calendar_service import BusyInterval, CalendarService
from .conflict_checker import ConflictChecker
from .escrow_service import EscrowService, PendingTransaction
from .ledger_event_monitor import LedgerEventMonitor, PollResult
from .offering_service import OfferingService

__all__ = [
    "AvailabilityService",
    "BaseService",
    "BookingActionResult",
    "BookingScheduler",
    "BookingService",
    "BookingStateMachine",
    "BusyInterval",
    "CacheService",
    "CalendarService",
    "ConflictChecker",
    "EscrowService",
    "LedgerEventMonitor",
    "OfferingService",
    "PendingTransaction",
    "PollResult",
    "TickResult",
    "TransitionResult",
    "get_cache_service",
]
