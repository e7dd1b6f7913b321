# backend/escrowbook/routes/bookings.py
"""
Booking routes.

Actions that move money return the booking as it stands plus the pending
ledger transaction; the booking's status changes only when the ledger
confirms the call.

Router Endpoints:
    POST / - Create a booking for the calling customer
    GET / - Bookings the caller is a party to
    GET /{booking_id} - Booking details
    GET /{booking_id}/history - Ordered transition history
    POST /{booking_id}/accept - Provider accepts
    POST /{booking_id}/decline - Provider declines (refunds when paid)
    POST /{booking_id}/cancel - Cancel (refunds when funded)
    POST /{booking_id}/complete - Request escrow release
    POST /{booking_id}/deposit - Submit or retry the escrow deposit
"""

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from ..api.dependencies import get_booking_service, get_current_actor
from ..core.actor import Actor
from ..models.booking import BookingStatus
from ..schemas.booking import (
    BookingActionResponse,
    BookingCreate,
    BookingHistoryResponse,
    BookingResponse,
    BookingTransitionResponse,
    DepositRequest,
    PendingTransactionResponse,
    TransitionRequest,
)
from ..services.booking_service import BookingActionResult, BookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _action_response(result: BookingActionResult) -> BookingActionResponse:
    pending = result.pending_transaction
    return BookingActionResponse(
        booking=BookingResponse.model_validate(result.booking),
        pending_transaction=(
            PendingTransactionResponse(**pending.to_dict()) if pending is not None else None
        ),
    )


@router.post("/", response_model=BookingActionResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    """
    Reserve a slot.

    The slot is rechecked under the provider lock before commit, so of two
    concurrent requests for overlapping slots exactly one succeeds; the
    other gets 409 with reason ``booked``. Priced bookings start in
    ``pending_payment`` and the deposit is submitted unless
    ``auto_deposit`` is false.
    """
    result = await asyncio.to_thread(booking_service.create_booking, booking_data, actor)
    return _action_response(result)


@router.get("/", response_model=List[BookingResponse])
async def list_bookings(
    status_filter: Optional[List[BookingStatus]] = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> List[BookingResponse]:
    bookings = await asyncio.to_thread(booking_service.list_bookings, actor, status_filter)
    return [BookingResponse.model_validate(b) for b in bookings]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    booking = await asyncio.to_thread(booking_service.get_booking, booking_id, actor)
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}/history", response_model=BookingHistoryResponse)
async def get_booking_history(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingHistoryResponse:
    transitions = await asyncio.to_thread(booking_service.get_history, booking_id, actor)
    return BookingHistoryResponse(
        booking_id=booking_id,
        transitions=[BookingTransitionResponse.model_validate(t) for t in transitions],
    )


@router.post("/{booking_id}/accept", response_model=BookingActionResponse)
async def accept_booking(
    booking_id: str,
    request: TransitionRequest,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    result = await asyncio.to_thread(
        booking_service.accept_booking, booking_id, actor, request.expected_version
    )
    return _action_response(result)


@router.post("/{booking_id}/decline", response_model=BookingActionResponse)
async def decline_booking(
    booking_id: str,
    request: TransitionRequest,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    result = await asyncio.to_thread(
        booking_service.decline_booking,
        booking_id,
        actor,
        request.expected_version,
        reason=request.reason,
    )
    return _action_response(result)


@router.post("/{booking_id}/cancel", response_model=BookingActionResponse)
async def cancel_booking(
    booking_id: str,
    request: TransitionRequest,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    result = await asyncio.to_thread(
        booking_service.cancel_booking,
        booking_id,
        actor,
        request.expected_version,
        reason=request.reason,
    )
    return _action_response(result)


@router.post("/{booking_id}/complete", response_model=BookingActionResponse)
async def complete_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    """Ask the ledger to release escrow; the booking completes on confirmation."""
    result = await asyncio.to_thread(booking_service.complete_booking, booking_id, actor)
    return _action_response(result)


@router.post("/{booking_id}/deposit", response_model=BookingActionResponse)
async def submit_deposit(
    booking_id: str,
    request: Optional[DepositRequest] = Body(None),
    actor: Actor = Depends(get_current_actor),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingActionResponse:
    amount = request.amount if request is not None else None
    result = await asyncio.to_thread(booking_service.submit_deposit, booking_id, actor, amount)
    return _action_response(result)
