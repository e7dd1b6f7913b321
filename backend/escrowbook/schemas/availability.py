# backend/escrowbook/schemas/availability.py
"""Availability view schemas."""

from datetime import datetime
from typing import List, Optional

from .base import StandardizedModel


class DayRollupResponse(StandardizedModel):
    date: str
    available_slots: int = 0
    reason: Optional[str] = None


class MonthAvailabilityResponse(StandardizedModel):
    offering_id: str
    year: int
    month: int
    timezone: str
    days: List[DayRollupResponse]
    # Only filled when no date in the month has a free slot
    next_available_date: Optional[str] = None


class SlotResponse(StandardizedModel):
    start: datetime
    end: datetime
    reason: Optional[str] = None


class DayAvailabilityResponse(StandardizedModel):
    offering_id: str
    date: str
    timezone: str
    available: List[SlotResponse]
    unavailable: List[SlotResponse]


class NextAvailableResponse(StandardizedModel):
    offering_id: str
    next_available_date: Optional[str] = None
