from __future__ import annotations

from datetime import date, time
from decimal import Decimal

from pydantic import ValidationError
import pytest

from escrowbook.schemas.offering import OfferingCreate, ScheduleExceptionIn, ScheduleUpdate, WeeklyWindowIn


class TestWeeklyWindow:
    def test_midnight_end_is_allowed(self) -> None:
        window = WeeklyWindowIn(weekday=4, start_time=time(20), end_time=time(0))

        assert window.end_time == time(0)

    def test_start_must_precede_end(self) -> None:
        with pytest.raises(ValidationError):
            WeeklyWindowIn(weekday=0, start_time=time(17), end_time=time(9))

    def test_weekday_range(self) -> None:
        with pytest.raises(ValidationError):
            WeeklyWindowIn(weekday=7, start_time=time(9), end_time=time(17))


class TestScheduleUpdate:
    def test_duplicate_weekday_rejected(self) -> None:
        window = {"weekday": 1, "start_time": "09:00", "end_time": "12:00"}

        with pytest.raises(ValidationError):
            ScheduleUpdate(weekly=[window, window])

    def test_duplicate_exception_date_rejected(self) -> None:
        closed = {"exception_date": "2026-03-03"}

        with pytest.raises(ValidationError):
            ScheduleUpdate(exceptions=[closed, closed])

    def test_disabled_exception_cannot_carry_times(self) -> None:
        with pytest.raises(ValidationError):
            ScheduleExceptionIn(
                exception_date=date(2026, 3, 3), enabled=False, start_time=time(9), end_time=time(10)
            )

    def test_exception_times_come_in_pairs(self) -> None:
        with pytest.raises(ValidationError):
            ScheduleExceptionIn(exception_date=date(2026, 3, 3), enabled=True, start_time=time(9))

    def test_unknown_fields_are_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ScheduleUpdate(weekly=[], holidays=[])


class TestOfferingCreate:
    def test_defaults_and_normalization(self) -> None:
        offering = OfferingCreate(title="  Guitar lesson ", duration_minutes=30, price="25")

        assert offering.title == "Guitar lesson"
        assert offering.price == Decimal("25.00")
        assert offering.timezone == "UTC"
        assert offering.buffer_minutes is None

    def test_unknown_timezone_rejected(self) -> None:
        with pytest.raises(ValidationError):
            OfferingCreate(title="Lesson", duration_minutes=30, timezone="Mars/Olympus")

    def test_fee_fraction_must_be_below_one(self) -> None:
        with pytest.raises(ValidationError):
            OfferingCreate(title="Lesson", duration_minutes=30, platform_fee_fraction="1")

    def test_negative_price_rejected(self) -> None:
        with pytest.raises(ValidationError):
            OfferingCreate(title="Lesson", duration_minutes=30, price="-1")
