# backend/escrowbook/schemas/booking.py
"""Booking request and response schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator

from ..core.clock import ensure_utc
from .base import Money, StandardizedModel
from ._strict_base import StrictRequestModel


class BookingCreate(StrictRequestModel):
    """Reserve one slot of an offering; the customer is the calling actor."""

    offering_id: str = Field(..., min_length=1)
    scheduled_start: datetime = Field(..., description="Slot start; naive values are taken as UTC")
    auto_deposit: bool = Field(
        True, description="Submit the escrow deposit right after creating a priced booking"
    )

    @field_validator("scheduled_start")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class TransitionRequest(StrictRequestModel):
    """Status change request carrying the version the caller last read."""

    expected_version: int = Field(..., ge=1)
    reason: Optional[str] = Field(None, max_length=1000)


class DepositRequest(StrictRequestModel):
    amount: Optional[Money] = None


class EscrowResponse(StandardizedModel):
    status: str
    amount: Money
    platform_fee_fraction: Money
    pending_operation: Optional[str] = None
    pending_tx_ref: Optional[str] = None
    funded_tx_ref: Optional[str] = None
    released_amount: Optional[Money] = None
    platform_fee_amount: Optional[Money] = None
    refunded_amount: Optional[Money] = None


class BookingResponse(StandardizedModel):
    id: str
    offering_id: str
    provider_id: str
    customer_id: str
    scheduled_start: datetime
    scheduled_end: datetime
    duration_minutes: int
    buffer_minutes: int
    status: str
    version: int
    auto_transition: bool
    ledger_tx_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    escrow: Optional[EscrowResponse] = None


class BookingTransitionResponse(StandardizedModel):
    sequence: int
    from_status: Optional[str] = None
    to_status: str
    actor_role: str
    actor_id: Optional[str] = None
    auto: bool
    triggering_event_id: Optional[str] = None
    reason: Optional[str] = None
    occurred_at: datetime


class BookingHistoryResponse(StandardizedModel):
    booking_id: str
    transitions: List[BookingTransitionResponse]


class PendingTransactionResponse(StandardizedModel):
    booking_id: str
    operation: str
    tx_ref: str
    signer: str
    submitted_at: datetime


class BookingActionResponse(StandardizedModel):
    """Result of a booking action: the booking plus any escrow call it started."""

    booking: BookingResponse
    pending_transaction: Optional[PendingTransactionResponse] = None
