# backend/escrowbook/routes/availability.py
"""
Availability routes.

Router Endpoints:
    GET /month?month=YYYY-MM - Per-date rollup for a month
    GET /day?date=YYYY-MM-DD - Every slot of one date, with reasons
    GET /next - First date with a free slot
"""

import asyncio
from datetime import date
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..api.dependencies import get_availability_service, get_current_actor
from ..core.actor import Actor
from ..schemas.availability import (
    DayAvailabilityResponse,
    DayRollupResponse,
    MonthAvailabilityResponse,
    NextAvailableResponse,
    SlotResponse,
)
from ..services.availability_service import AvailabilityService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/offerings/{offering_id}/availability", tags=["availability"])

MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


@router.get("/month", response_model=MonthAvailabilityResponse)
async def get_month_availability(
    offering_id: str,
    month: str = Query(..., pattern=MONTH_PATTERN, description="Month as YYYY-MM"),
    actor: Actor = Depends(get_current_actor),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> MonthAvailabilityResponse:
    """
    Month view for an offering.

    Every date carries its count of free slots; dates without any carry the
    reason. When the whole month is unavailable the first later date with a
    free slot is included.
    """
    year, month_number = (int(part) for part in month.split("-"))
    rollup = await asyncio.to_thread(
        availability_service.get_month_availability, offering_id, year, month_number
    )

    next_date: Optional[date] = None
    if not any(day.available_slots for day in rollup.days):
        next_date = await asyncio.to_thread(availability_service.next_available_date, offering_id)

    return MonthAvailabilityResponse(
        offering_id=rollup.offering_id,
        year=rollup.year,
        month=rollup.month,
        timezone=rollup.timezone,
        days=[
            DayRollupResponse(date=d.date, available_slots=d.available_slots, reason=d.reason)
            for d in rollup.days
        ],
        next_available_date=next_date.isoformat() if next_date else None,
    )


@router.get("/day", response_model=DayAvailabilityResponse)
async def get_day_availability(
    offering_id: str,
    date_param: date = Query(..., alias="date", description="Local date as YYYY-MM-DD"),
    actor: Actor = Depends(get_current_actor),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> DayAvailabilityResponse:
    day = await asyncio.to_thread(
        availability_service.get_day_availability, offering_id, date_param
    )
    return DayAvailabilityResponse(
        offering_id=day.offering_id,
        date=day.date.isoformat(),
        timezone=day.timezone,
        available=[SlotResponse(start=s.start, end=s.end) for s in day.available],
        unavailable=[
            SlotResponse(start=s.start, end=s.end, reason=s.reason) for s in day.unavailable
        ],
    )


@router.get("/next", response_model=NextAvailableResponse)
async def get_next_available(
    offering_id: str,
    from_date: Optional[date] = Query(None, description="Search from this local date"),
    actor: Actor = Depends(get_current_actor),
    availability_service: AvailabilityService = Depends(get_availability_service),
) -> NextAvailableResponse:
    found = await asyncio.to_thread(
        availability_service.next_available_date, offering_id, from_date
    )
    return NextAvailableResponse(
        offering_id=offering_id,
        next_available_date=found.isoformat() if found else None,
    )
