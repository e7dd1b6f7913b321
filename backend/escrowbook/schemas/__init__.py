"""Request and response schemas for the HTTP API."""

from .availability import (
    DayAvailabilityResponse,
    DayRollupResponse,
    MonthAvailabilityResponse,
    NextAvailableResponse,
    SlotResponse,
)
from .booking import (
    BookingActionResponse,
    BookingCreate,
    BookingHistoryResponse,
    BookingResponse,
    BookingTransitionResponse,
    DepositRequest,
    EscrowResponse,
    PendingTransactionResponse,
    TransitionRequest,
)
from .offering import (
    OfferingCreate,
    OfferingResponse,
    ScheduleDayResponse,
    ScheduleExceptionIn,
    ScheduleExceptionResponse,
    ScheduleUpdate,
    WeeklyWindowIn,
)

__all__ = [
    "BookingActionResponse",
    "BookingCreate",
    "BookingHistoryResponse",
    "BookingResponse",
    "BookingTransitionResponse",
    "DayAvailabilityResponse",
    "DayRollupResponse",
    "DepositRequest",
    "EscrowResponse",
    "MonthAvailabilityResponse",
    "NextAvailableResponse",
    "OfferingCreate",
    "OfferingResponse",
    "PendingTransactionResponse",
    "ScheduleDayResponse",
    "ScheduleExceptionIn",
    "ScheduleExceptionResponse",
    "ScheduleUpdate",
    "SlotResponse",
    "TransitionRequest",
    "WeeklyWindowIn",
]
