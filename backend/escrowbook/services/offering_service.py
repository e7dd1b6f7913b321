# backend/escrowbook/services/offering_service.py
"""Offering and schedule management."""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.actor import Actor
from ..core.clock import Clock
from ..core.config import settings
from ..core.enums import ActorRole
from ..core.exceptions import InsufficientPermission, NotFoundException
from ..models.offering import Offering
from ..repositories.factory import RepositoryFactory
from ..schemas.offering import OfferingCreate, ScheduleUpdate
from .base import BaseService
from .cache_service import CacheService, get_cache_service
from .calendar_service import CalendarService

logger = logging.getLogger(__name__)


class OfferingService(BaseService):
    def __init__(
        self,
        db: Session,
        clock: Optional[Clock] = None,
        cache: Optional[CacheService] = None,
    ):
        super().__init__(db, clock)
        self.repository = RepositoryFactory.create_offering_repository(db)
        self.cache = cache or get_cache_service()

    def get_offering(self, offering_id: str) -> Offering:
        offering = self.repository.get_with_schedule(offering_id)
        if offering is None:
            raise NotFoundException(f"Offering {offering_id} not found", code="OFFERING_NOT_FOUND")
        return offering

    def list_for_provider(self, provider_id: str) -> List[Offering]:
        return self.repository.list_for_provider(provider_id)

    @BaseService.measure_operation("create_offering")
    def create_offering(self, data: OfferingCreate, actor: Actor) -> Offering:
        if actor.role != ActorRole.PROVIDER or not actor.id:
            raise InsufficientPermission("Only providers can publish offerings")

        with self.transaction():
            offering = Offering(
                provider_id=actor.id,
                title=data.title,
                description=data.description,
                duration_minutes=data.duration_minutes,
                buffer_minutes=(
                    settings.default_buffer_minutes
                    if data.buffer_minutes is None
                    else data.buffer_minutes
                ),
                min_lead_minutes=data.min_lead_minutes,
                timezone=data.timezone,
                price=data.price,
                platform_fee_fraction=data.platform_fee_fraction,
            )
            self.db.add(offering)
            self.db.flush()
            if data.schedule is not None:
                self._write_schedule(offering, data.schedule)

        self.log_operation("create_offering", offering_id=offering.id, provider_id=actor.id)
        return self.get_offering(offering.id)

    @BaseService.measure_operation("update_schedule")
    def update_schedule(self, offering_id: str, schedule: ScheduleUpdate, actor: Actor) -> Offering:
        """Replace the weekly windows and exceptions of an offering."""
        offering = self.get_offering(offering_id)
        if actor.role != ActorRole.ADMIN and not (
            actor.role == ActorRole.PROVIDER and actor.is_party(offering.provider_id)
        ):
            raise InsufficientPermission("Only the offering's provider may change its schedule")

        with self.transaction():
            self._write_schedule(offering, schedule)

        # Cached month views were computed from the old schedule
        self.cache.invalidate_provider_availability(str(offering.provider_id))
        CalendarService().invalidate(str(offering.provider_id))
        self.log_operation(
            "update_schedule",
            offering_id=offering_id,
            weekly=len(schedule.weekly),
            exceptions=len(schedule.exceptions),
        )
        return self.get_offering(offering_id)

    def _write_schedule(self, offering: Offering, schedule: ScheduleUpdate) -> None:
        self.repository.replace_schedule(
            offering,
            [(w.weekday, w.enabled, w.start_time, w.end_time) for w in schedule.weekly],
            [
                (e.exception_date, e.enabled, e.start_time, e.end_time, e.reason)
                for e in schedule.exceptions
            ],
        )
