# backend/escrowbook/schemas/offering.py
"""
Offering and schedule schemas.

The weekly schedule is a typed list of per-weekday windows plus an explicit
exception list. Everything is validated here, at write time, so the
availability engine can trust what it reads.
"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import List, Optional

from pydantic import Field, field_validator, model_validator

from ..core.timezone_utils import is_valid_timezone
from .base import Money, StandardizedModel
from ._strict_base import StrictRequestModel

MIDNIGHT = time(0, 0)


def _check_window(start: time, end: time) -> None:
    # 00:00 as an end time means "until midnight"
    if end != MIDNIGHT and start >= end:
        raise ValueError("start_time must be before end_time")


class WeeklyWindowIn(StrictRequestModel):
    """Recurring window for one weekday (0=Monday ... 6=Sunday)."""

    weekday: int = Field(..., ge=0, le=6)
    enabled: bool = True
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def _validate_window(self) -> "WeeklyWindowIn":
        _check_window(self.start_time, self.end_time)
        return self


class ScheduleExceptionIn(StrictRequestModel):
    """
    Date-specific override.

    Disabled exceptions close the date. Enabled exceptions with times replace
    that date's window; enabled without times keep the weekday window.
    """

    exception_date: date
    enabled: bool = False
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    reason: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def _validate_override(self) -> "ScheduleExceptionIn":
        if (self.start_time is None) != (self.end_time is None):
            raise ValueError("start_time and end_time must be given together")
        if self.start_time is not None and self.end_time is not None:
            if not self.enabled:
                raise ValueError("a disabled exception cannot carry times")
            _check_window(self.start_time, self.end_time)
        return self


class ScheduleUpdate(StrictRequestModel):
    weekly: List[WeeklyWindowIn] = Field(default_factory=list)
    exceptions: List[ScheduleExceptionIn] = Field(default_factory=list)

    @field_validator("weekly")
    @classmethod
    def _unique_weekdays(cls, v: List[WeeklyWindowIn]) -> List[WeeklyWindowIn]:
        weekdays = [w.weekday for w in v]
        if len(weekdays) != len(set(weekdays)):
            raise ValueError("each weekday may appear at most once")
        return v

    @field_validator("exceptions")
    @classmethod
    def _unique_dates(cls, v: List[ScheduleExceptionIn]) -> List[ScheduleExceptionIn]:
        dates = [e.exception_date for e in v]
        if len(dates) != len(set(dates)):
            raise ValueError("each date may appear at most once")
        return v


class OfferingCreate(StrictRequestModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    duration_minutes: int = Field(..., ge=5, le=720)
    buffer_minutes: Optional[int] = Field(None, ge=0, le=24 * 60)
    min_lead_minutes: Optional[int] = Field(None, ge=0)
    timezone: str = "UTC"
    price: Money = Field(default=Decimal("0"))
    platform_fee_fraction: Money = Field(default=Decimal("0.1"))
    schedule: Optional[ScheduleUpdate] = None

    @field_validator("timezone")
    @classmethod
    def _valid_timezone(cls, v: str) -> str:
        if not is_valid_timezone(v):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator("price")
    @classmethod
    def _non_negative_price(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("price must not be negative")
        return v.quantize(Decimal("0.01"))

    @field_validator("platform_fee_fraction")
    @classmethod
    def _fee_range(cls, v: Decimal) -> Decimal:
        if v < 0 or v >= 1:
            raise ValueError("platform_fee_fraction must be in [0, 1)")
        return v

    @field_validator("title")
    @classmethod
    def _strip_title(cls, v: str) -> str:
        stripped = v.strip()
        if not stripped:
            raise ValueError("title must not be blank")
        return stripped


class ScheduleDayResponse(StandardizedModel):
    weekday: int
    enabled: bool
    start_time: time
    end_time: time


class ScheduleExceptionResponse(StandardizedModel):
    exception_date: date
    enabled: bool
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    reason: Optional[str] = None


class OfferingResponse(StandardizedModel):
    id: str
    provider_id: str
    title: str
    description: Optional[str] = None
    duration_minutes: int
    buffer_minutes: int
    min_lead_minutes: Optional[int] = None
    timezone: str
    price: Money
    platform_fee_fraction: Money
    is_active: bool
    created_at: datetime
    schedule_days: List[ScheduleDayResponse] = Field(default_factory=list)
    schedule_exceptions: List[ScheduleExceptionResponse] = Field(default_factory=list)
