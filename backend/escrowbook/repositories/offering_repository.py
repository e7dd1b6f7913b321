"""Offering and weekly schedule data access."""

from datetime import date, time
import logging
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, selectinload

from ..models.offering import Offering, OfferingScheduleDay, OfferingScheduleException
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

WeeklyWindow = Tuple[int, bool, time, time]
DateException = Tuple[date, bool, Optional[time], Optional[time], Optional[str]]


class OfferingRepository(BaseRepository[Offering]):
    def __init__(self, db: Session):
        super().__init__(db, Offering)

    def get_with_schedule(self, offering_id: str) -> Optional[Offering]:
        stmt = (
            select(Offering)
            .where(Offering.id == offering_id)
            .options(
                selectinload(Offering.schedule_days),
                selectinload(Offering.schedule_exceptions),
            )
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_provider(self, provider_id: str, active_only: bool = True) -> List[Offering]:
        stmt = select(Offering).where(Offering.provider_id == provider_id)
        if active_only:
            stmt = stmt.where(Offering.is_active.is_(True))
        return list(self.db.execute(stmt.order_by(Offering.created_at.asc())).scalars().all())

    def replace_schedule(
        self,
        offering: Offering,
        weekly: Iterable[WeeklyWindow],
        exceptions: Iterable[DateException],
    ) -> Offering:
        """Swap the offering's whole weekly schedule and exception list."""
        self.db.execute(
            delete(OfferingScheduleDay).where(OfferingScheduleDay.offering_id == offering.id)
        )
        self.db.execute(
            delete(OfferingScheduleException).where(
                OfferingScheduleException.offering_id == offering.id
            )
        )
        self.db.expire(offering, ["schedule_days", "schedule_exceptions"])
        for weekday, enabled, start, end in weekly:
            self.db.add(
                OfferingScheduleDay(
                    offering_id=offering.id,
                    weekday=weekday,
                    enabled=enabled,
                    start_time=start,
                    end_time=end,
                )
            )
        for exception_date, enabled, start, end, reason in exceptions:
            self.db.add(
                OfferingScheduleException(
                    offering_id=offering.id,
                    exception_date=exception_date,
                    enabled=enabled,
                    start_time=start,
                    end_time=end,
                    reason=reason,
                )
            )
        self.db.flush()
        self.db.refresh(offering)
        return offering
