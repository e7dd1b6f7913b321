# backend/escrowbook/services/conflict_checker.py
"""
Conflict Checker Service

Interval arithmetic shared by the availability engine and the commit-time
recheck. All intervals are half-open ``[start, end)`` pairs of aware UTC
datetimes.

The recheck reads committed bookings straight from the database. It never
consults the month cache.
"""

from datetime import datetime, timedelta
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..core.clock import Clock
from ..core.config import settings
from ..core.enums import SlotUnavailableReason
from ..core.exceptions import SlotUnavailable
from ..models.booking import Booking
from ..models.offering import Offering
from ..repositories.factory import RepositoryFactory
from .base import BaseService

logger = logging.getLogger(__name__)

Interval = Tuple[datetime, datetime]

MAX_BUFFER_MINUTES = 24 * 60


def overlaps(a: Interval, b: Interval) -> bool:
    return a[0] < b[1] and b[0] < a[1]


def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    """Sort and coalesce overlapping or touching intervals."""
    ordered = sorted((s, e) for s, e in intervals if s < e)
    merged: List[Interval] = []
    for start, end in ordered:
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def subtract_intervals(base: Iterable[Interval], blocks: Iterable[Interval]) -> List[Interval]:
    """Return the parts of ``base`` not covered by any of ``blocks``."""
    remaining = merge_intervals(base)
    for block_start, block_end in merge_intervals(blocks):
        next_remaining: List[Interval] = []
        for start, end in remaining:
            if block_end <= start or block_start >= end:
                next_remaining.append((start, end))
                continue
            if start < block_start:
                next_remaining.append((start, block_start))
            if block_end < end:
                next_remaining.append((block_end, end))
        remaining = next_remaining
    return remaining


def truncate_before(intervals: Iterable[Interval], cutoff: datetime) -> List[Interval]:
    """Drop everything earlier than ``cutoff``."""
    return [(max(s, cutoff), e) for s, e in intervals if e > cutoff]


def expand(interval: Interval, minutes: int) -> Interval:
    pad = timedelta(minutes=max(minutes, 0))
    return (interval[0] - pad, interval[1] + pad)


def booking_block(booking: Booking, extra_buffer_minutes: int = 0) -> Interval:
    """Window a committed booking removes from availability, buffer included."""
    buffer_minutes = max(int(booking.buffer_minutes or 0), extra_buffer_minutes)
    return expand((booking.scheduled_start, booking.scheduled_end), buffer_minutes)


def count_aligned_slots(
    free: Sequence[Interval], anchor: datetime, slot_minutes: int
) -> int:
    """
    Count slots of ``slot_minutes`` on the grid starting at ``anchor`` that fit
    entirely inside ``free``. Works per interval without listing the slots.
    """
    step = timedelta(minutes=slot_minutes)
    total = 0
    for start, end in free:
        offset = start - anchor
        steps_in = -(-offset // step) if offset > timedelta(0) else 0
        first = anchor + steps_in * step
        if first + step <= end:
            total += (end - first) // step
    return total


def aligned_slots(window: Interval, slot_minutes: int) -> List[Interval]:
    """Enumerate the slot grid of one schedule window."""
    step = timedelta(minutes=slot_minutes)
    slots: List[Interval] = []
    cursor = window[0]
    while cursor + step <= window[1]:
        slots.append((cursor, cursor + step))
        cursor += step
    return slots


class ConflictChecker(BaseService):
    """Commit-time slot validation against the live booking table."""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        super().__init__(db, clock)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    def find_conflicts(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
        buffer_minutes: int,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """Committed bookings whose buffered window overlaps ``[start, end)``."""
        candidates = self.booking_repository.get_committed_in_range(
            provider_id,
            start,
            end,
            # Wide enough for any stored buffer; exact overlap is checked below
            pad_minutes=max(buffer_minutes, MAX_BUFFER_MINUTES),
            exclude_booking_id=exclude_booking_id,
        )
        return [b for b in candidates if overlaps(booking_block(b, buffer_minutes), (start, end))]

    @BaseService.measure_operation("recheck_slot")
    def recheck_slot(
        self,
        offering: Offering,
        start: datetime,
        end: datetime,
        schedule_windows: Sequence[Interval],
    ) -> None:
        """
        Raise SlotUnavailable unless ``[start, end)`` is still bookable.

        ``schedule_windows`` are the offering's UTC windows for the slot's
        local date.
        """
        now = self.clock.now()
        lead = offering.min_lead_minutes
        lead_minutes = settings.minimum_lead_minutes if lead is None else int(lead)
        if start < now + timedelta(minutes=lead_minutes):
            raise SlotUnavailable(
                "This slot is too close to start to be booked",
                reason=SlotUnavailableReason.PAST_CUTOFF.value,
            )

        if not any(w_start <= start and end <= w_end for w_start, w_end in schedule_windows):
            raise SlotUnavailable(
                "This slot is outside the provider's service hours", reason="no_service_hours"
            )

        conflicts = self.find_conflicts(
            str(offering.provider_id), start, end, int(offering.buffer_minutes or 0)
        )
        if conflicts:
            self.logger.info(
                "Commit-time recheck found a conflict",
                extra={
                    "provider_id": offering.provider_id,
                    "start": start.isoformat(),
                    "conflicting_booking_ids": [b.id for b in conflicts],
                },
            )
            raise SlotUnavailable(
                reason=SlotUnavailableReason.BOOKED.value,
                details={"conflicting_booking_id": conflicts[0].id},
            )
