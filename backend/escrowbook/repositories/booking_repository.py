# backend/escrowbook/repositories/booking_repository.py
"""
Booking Repository for the escrow booking core

Data access for bookings and their transition history:
- Version-checked status writes (compare-and-set on ``version``)
- Committed-booking range queries for availability and the commit-time recheck
- Time-due queries for the scheduler
"""

from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.booking import (
    SLOT_HOLDING_STATUSES,
    Booking,
    BookingStatus,
    BookingTransition,
)
from ..models.escrow import EscrowRecord
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking data access."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    def get_by_id_fresh(self, booking_id: str) -> Optional[Booking]:
        """Load a booking bypassing the identity map so the version is current."""
        try:
            stmt = select(Booking).where(Booking.id == booking_id).execution_options(
                populate_existing=True
            )
            return self.db.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to load booking: {str(e)}")

    # Version-checked writes

    def compare_and_set_status(
        self,
        booking_id: str,
        expected_version: int,
        values: Dict[str, Any],
    ) -> bool:
        """
        Apply ``values`` and bump the version only if the stored version still
        equals ``expected_version``.

        Returns False when another writer got there first.
        """
        try:
            stmt = (
                update(Booking)
                .where(Booking.id == booking_id)
                .where(Booking.version == expected_version)
                .values(version=expected_version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            result = self.db.execute(stmt)
            return bool(result.rowcount)
        except SQLAlchemyError as e:
            self.logger.error(f"Error updating booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to update booking: {str(e)}")

    def add_transition(self, **kwargs: Any) -> BookingTransition:
        transition = BookingTransition(**kwargs)
        self.db.add(transition)
        self.db.flush()
        return transition

    def get_history(self, booking_id: str) -> List[BookingTransition]:
        stmt = (
            select(BookingTransition)
            .where(BookingTransition.booking_id == booking_id)
            .order_by(BookingTransition.sequence.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    # Availability queries

    def get_committed_in_range(
        self,
        provider_id: str,
        range_start: datetime,
        range_end: datetime,
        pad_minutes: int = 0,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """
        Slot-holding bookings for a provider that touch ``[range_start, range_end)``.

        ``pad_minutes`` widens the search so bookings whose buffer reaches into
        the range are included too.
        """
        pad = timedelta(minutes=max(pad_minutes, 0))
        try:
            stmt = (
                select(Booking)
                .where(Booking.provider_id == provider_id)
                .where(Booking.status.in_([s.value for s in SLOT_HOLDING_STATUSES]))
                .where(Booking.scheduled_start < range_end + pad)
                .where(Booking.scheduled_end > range_start - pad)
                .order_by(Booking.scheduled_start.asc())
                .execution_options(populate_existing=True)
            )
            if exclude_booking_id:
                stmt = stmt.where(Booking.id != exclude_booking_id)
            return list(self.db.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading committed bookings for {provider_id}: {str(e)}")
            raise RepositoryException(f"Failed to load committed bookings: {str(e)}")

    def list_for_party(
        self,
        party_id: str,
        statuses: Optional[Iterable[BookingStatus]] = None,
        limit: int = 100,
    ) -> List[Booking]:
        stmt = select(Booking).where(
            (Booking.customer_id == party_id) | (Booking.provider_id == party_id)
        )
        if statuses:
            stmt = stmt.where(Booking.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(Booking.scheduled_start.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    # Scheduler queries

    def get_due_to_start(self, now: datetime, limit: int = 500) -> List[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.CONFIRMED.value)
            .where(Booking.scheduled_start <= now)
            .order_by(Booking.scheduled_start.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_due_to_complete(self, cutoff: datetime, limit: int = 500) -> List[Booking]:
        """In-progress bookings whose scheduled end is at or before ``cutoff``."""
        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.IN_PROGRESS.value)
            .where(Booking.scheduled_end <= cutoff)
            .order_by(Booking.scheduled_end.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_needing_reminder(
        self, window_start: datetime, window_end: datetime, limit: int = 500
    ) -> List[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.CONFIRMED.value)
            .where(Booking.reminder_sent_at.is_(None))
            .where(Booking.scheduled_start >= window_start)
            .where(Booking.scheduled_start <= window_end)
            .order_by(Booking.scheduled_start.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_reminder_sent(self, booking_id: str, at: datetime) -> bool:
        """Set ``reminder_sent_at`` once; False if another worker already did."""
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.reminder_sent_at.is_(None))
            .values(reminder_sent_at=at)
            .execution_options(synchronize_session=False)
        )
        return bool(self.db.execute(stmt).rowcount)

    def get_stale_completions(self, older_than: datetime, limit: int = 100) -> List[Booking]:
        """Bookings whose submitted complete call has not been confirmed in time."""
        stmt = (
            select(Booking)
            .join(EscrowRecord, EscrowRecord.booking_id == Booking.id)
            .where(Booking.status == BookingStatus.IN_PROGRESS.value)
            .where(EscrowRecord.pending_operation == "complete")
            .where(EscrowRecord.pending_since <= older_than)
            .order_by(EscrowRecord.pending_since.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
