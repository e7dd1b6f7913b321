# backend/escrowbook/services/availability_service.py
"""
Availability Service

Computes bookable slots for an offering from three constraint sources:

1. The weekly schedule, with date exceptions applied
2. Committed bookings for the same provider, each widened by its buffer
3. Busy intervals from the provider's linked external calendars

Windows on the current day are also cut at ``now + minimum lead``. The
month view is an aggregate interval-subtraction pass per date; the day
view lists each slot of the offering's duration with its status.
"""

from calendar import monthrange
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import settings
from ..core.enums import DayUnavailableReason, SlotUnavailableReason
from ..core.exceptions import NotFoundException
from ..core.timezone_utils import local_to_utc, local_today
from ..models.offering import Offering
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .cache_service import CacheService, get_cache_service
from .calendar_service import CalendarService
from .conflict_checker import (
    Interval,
    aligned_slots,
    booking_block,
    count_aligned_slots,
    overlaps,
    subtract_intervals,
    truncate_before,
)

logger = logging.getLogger(__name__)


@dataclass
class DayAvailability:
    date: str
    available_slots: int = 0
    reason: Optional[str] = None


@dataclass
class MonthAvailability:
    offering_id: str
    year: int
    month: int
    timezone: str
    days: List[DayAvailability] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonthAvailability":
        days = [DayAvailability(**day) for day in data.get("days", [])]
        return cls(
            offering_id=data["offering_id"],
            year=data["year"],
            month=data["month"],
            timezone=data["timezone"],
            days=days,
        )


@dataclass
class SlotView:
    start: datetime
    end: datetime
    available: bool
    reason: Optional[str] = None


@dataclass
class DaySlots:
    offering_id: str
    date: date
    timezone: str
    slots: List[SlotView] = field(default_factory=list)

    @property
    def available(self) -> List[SlotView]:
        return [slot for slot in self.slots if slot.available]

    @property
    def unavailable(self) -> List[SlotView]:
        return [slot for slot in self.slots if not slot.available]


def _midnight(value: time) -> bool:
    return value == time(0, 0)


class AvailabilityService(BaseService):
    """Slot availability for offerings."""

    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        calendar_service: Optional[CalendarService] = None,
        cache: Optional[CacheService] = None,
    ):
        super().__init__(db, clock)
        self.offering_repository = RepositoryFactory.create_offering_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.calendar_service = calendar_service or CalendarService()
        self.cache = cache or get_cache_service()

    # Schedule resolution

    def get_offering(self, offering_id: str) -> Offering:
        offering = self.offering_repository.get_with_schedule(offering_id)
        if offering is None:
            raise NotFoundException(f"Offering {offering_id} not found", code="OFFERING_NOT_FOUND")
        return offering

    def schedule_windows(self, offering: Offering, local_date: date) -> List[Interval]:
        """UTC windows the schedule opens on ``local_date`` (offering timezone)."""
        exception = next(
            (e for e in offering.schedule_exceptions if e.exception_date == local_date), None
        )
        if exception is not None:
            if not exception.enabled:
                return []
            if exception.start_time is not None and exception.end_time is not None:
                return self._window(offering, local_date, exception.start_time, exception.end_time)

        weekday_row = next(
            (d for d in offering.schedule_days if d.weekday == local_date.weekday()), None
        )
        if weekday_row is None or not weekday_row.enabled:
            return []
        return self._window(offering, local_date, weekday_row.start_time, weekday_row.end_time)

    def _window(
        self, offering: Offering, local_date: date, start: time, end: time
    ) -> List[Interval]:
        window_start = local_to_utc(local_date, start, offering.timezone)
        if _midnight(end):
            window_end = local_to_utc(local_date + timedelta(days=1), time(0), offering.timezone)
        else:
            window_end = local_to_utc(local_date, end, offering.timezone)
        if window_end <= window_start:
            return []
        return [(window_start, window_end)]

    def _lead_cutoff(self, offering: Offering) -> datetime:
        lead = offering.min_lead_minutes
        lead_minutes = settings.minimum_lead_minutes if lead is None else int(lead)
        return self.clock.now() + timedelta(minutes=lead_minutes)

    def _blocks(self, offering: Offering, start: datetime, end: datetime) -> List[Interval]:
        bookings = self.booking_repository.get_committed_in_range(
            str(offering.provider_id), start, end, pad_minutes=24 * 60
        )
        return [booking_block(b, int(offering.buffer_minutes or 0)) for b in bookings]

    def _busy(self, offering: Offering, start: datetime, end: datetime) -> List[Interval]:
        return [
            busy.interval
            for busy in self.calendar_service.get_busy_intervals(
                str(offering.provider_id), start, end, fallback_timezone=offering.timezone
            )
        ]

    def _local_range(self, offering: Offering, first: date, last: date) -> Tuple[datetime, datetime]:
        start = local_to_utc(first, time(0), offering.timezone)
        end = local_to_utc(last + timedelta(days=1), time(0), offering.timezone)
        return start, end

    # Month view

    @BaseService.measure_operation("get_month_availability")
    def get_month_availability(
        self, offering_id: str, year: int, month: int, use_cache: bool = True
    ) -> MonthAvailability:
        offering = self.get_offering(offering_id)
        provider_id = str(offering.provider_id)
        if use_cache:
            cached = self.cache.get_month_rollup(provider_id, offering_id, year, month)
            if cached is not None:
                return MonthAvailability.from_dict(cached)

        result = self._compute_month(offering, year, month)
        if use_cache:
            self.cache.set_month_rollup(provider_id, offering_id, year, month, result.to_dict())
        return result

    def _compute_month(self, offering: Offering, year: int, month: int) -> MonthAvailability:
        first = date(year, month, 1)
        last = date(year, month, monthrange(year, month)[1])
        range_start, range_end = self._local_range(offering, first, last)
        blocks = self._blocks(offering, range_start, range_end)
        busy = self._busy(offering, range_start, range_end)
        cutoff = self._lead_cutoff(offering)

        result = MonthAvailability(
            offering_id=str(offering.id),
            year=year,
            month=month,
            timezone=str(offering.timezone),
        )
        day = first
        while day <= last:
            result.days.append(self._rollup_day(offering, day, cutoff, blocks, busy))
            day += timedelta(days=1)
        return result

    def _rollup_day(
        self,
        offering: Offering,
        local_date: date,
        cutoff: datetime,
        blocks: Sequence[Interval],
        busy: Sequence[Interval],
    ) -> DayAvailability:
        """Slot count for one date, or the first constraint that leaves none."""
        duration = int(offering.duration_minutes)
        windows = self.schedule_windows(offering, local_date)
        day = DayAvailability(date=local_date.isoformat())

        scheduled = open_after_lead = after_bookings = after_calendar = 0
        for window in windows:
            anchor = window[0]
            free = [window]
            scheduled += count_aligned_slots(free, anchor, duration)
            free = truncate_before(free, cutoff)
            open_after_lead += count_aligned_slots(free, anchor, duration)
            free = subtract_intervals(free, blocks)
            after_bookings += count_aligned_slots(free, anchor, duration)
            free = subtract_intervals(free, busy)
            after_calendar += count_aligned_slots(free, anchor, duration)

        if scheduled == 0:
            day.reason = DayUnavailableReason.NO_SERVICE_HOURS.value
        elif open_after_lead == 0:
            day.reason = DayUnavailableReason.PAST_CUTOFF.value
        elif after_bookings == 0:
            day.reason = DayUnavailableReason.FULLY_BOOKED.value
        elif after_calendar == 0:
            day.reason = DayUnavailableReason.CALENDAR_CONFLICT.value
        else:
            day.available_slots = after_calendar
        return day

    # Day view

    @BaseService.measure_operation("get_day_availability")
    def get_day_availability(self, offering_id: str, local_date: date) -> DaySlots:
        offering = self.get_offering(offering_id)
        duration = int(offering.duration_minutes)
        windows = self.schedule_windows(offering, local_date)
        result = DaySlots(
            offering_id=str(offering.id), date=local_date, timezone=str(offering.timezone)
        )
        if not windows:
            return result

        range_start = min(w[0] for w in windows)
        range_end = max(w[1] for w in windows)
        blocks = self._blocks(offering, range_start, range_end)
        busy = self._busy(offering, range_start, range_end)
        cutoff = self._lead_cutoff(offering)

        for window in windows:
            for slot in aligned_slots(window, duration):
                if slot[0] < cutoff:
                    reason: Optional[str] = SlotUnavailableReason.PAST_CUTOFF.value
                elif any(overlaps(slot, block) for block in blocks):
                    reason = SlotUnavailableReason.BOOKED.value
                elif any(overlaps(slot, interval) for interval in busy):
                    reason = SlotUnavailableReason.CALENDAR_CONFLICT.value
                else:
                    reason = None
                result.slots.append(SlotView(slot[0], slot[1], reason is None, reason))
        return result

    # Search

    @BaseService.measure_operation("next_available_date")
    def next_available_date(
        self, offering_id: str, from_date: Optional[date] = None
    ) -> Optional[date]:
        """First date with at least one open slot within the search horizon."""
        offering = self.get_offering(offering_id)
        start = from_date or local_today(self.clock.now(), offering.timezone)
        horizon = start + timedelta(days=settings.next_available_search_days)

        year, month = start.year, start.month
        while date(year, month, 1) <= horizon:
            rollup = self.get_month_availability(offering_id, year, month)
            for day in rollup.days:
                day_date = date.fromisoformat(day.date)
                if start <= day_date <= horizon and day.available_slots > 0:
                    return day_date
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        return None
