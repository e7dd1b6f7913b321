# backend/escrowbook/repositories/ledger_event_repository.py
"""
Repository for the ledger event log and monitor cursor.

Events are recorded insert-or-ignore on ``(tx_ref, log_index)`` so a batch
fetched twice lands once.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Dict, List, Optional, cast

from sqlalchemy import func, select
from sqlalchemy.orm import Session
import ulid

from ..models.ledger_event import LedgerCursor, LedgerEvent, LedgerEventStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

# Events in these states still need the monitor's attention
_OPEN_STATUSES = (LedgerEventStatus.RECEIVED.value, LedgerEventStatus.RETRY.value)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEventRepository(BaseRepository[LedgerEvent]):
    """Data access helpers for ledger events and cursors."""

    def __init__(self, db: Session):
        super().__init__(db, LedgerEvent)

    # Cursor

    def get_cursor(self, name: str) -> int:
        row = self.db.get(LedgerCursor, name)
        return int(row.block_number) if row is not None else 0

    def save_cursor(self, name: str, block_number: int) -> None:
        row = self.db.get(LedgerCursor, name)
        if row is None:
            self.db.add(LedgerCursor(name=name, block_number=block_number))
        elif block_number > row.block_number:
            row.block_number = block_number
            row.updated_at = _now_utc()
        self.db.flush()

    # Events

    def record(
        self,
        *,
        kind: str,
        booking_id: Optional[str],
        tx_ref: str,
        block_number: int,
        log_index: int,
        data: Dict[str, Any],
        received_at: Optional[datetime] = None,
    ) -> bool:
        """Insert the event unless it is already known. Returns True if inserted."""
        values = {
            "id": str(ulid.ULID()),
            "kind": kind,
            "booking_id": booking_id,
            "tx_ref": tx_ref,
            "block_number": block_number,
            "log_index": log_index,
            "data": data,
            "status": LedgerEventStatus.RECEIVED.value,
            "attempt_count": 0,
            "received_at": received_at or _now_utc(),
        }
        return self.insert_or_ignore(values, conflict_columns=["tx_ref", "log_index"])

    def get(self, event_id: str) -> Optional[LedgerEvent]:
        return cast(Optional[LedgerEvent], self.db.get(LedgerEvent, event_id))

    def list_open(self, limit: int = 500) -> List[LedgerEvent]:
        """Unprocessed events in ledger emission order."""
        stmt = (
            select(LedgerEvent)
            .where(LedgerEvent.status.in_(_OPEN_STATUSES))
            .order_by(LedgerEvent.block_number.asc(), LedgerEvent.log_index.asc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_booking(self, booking_id: str) -> List[LedgerEvent]:
        stmt = (
            select(LedgerEvent)
            .where(LedgerEvent.booking_id == booking_id)
            .order_by(LedgerEvent.block_number.asc(), LedgerEvent.log_index.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def count_by_status(self, status: LedgerEventStatus) -> int:
        stmt = select(func.count()).select_from(LedgerEvent).where(LedgerEvent.status == status.value)
        return int(self.db.execute(stmt).scalar_one())

    def mark(
        self,
        event: LedgerEvent,
        status: LedgerEventStatus,
        *,
        error: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        event.status = status.value
        event.attempt_count = (event.attempt_count or 0) + 1
        event.processing_error = error[:1000] if error else None
        if status != LedgerEventStatus.RETRY:
            event.processed_at = at or _now_utc()
        self.db.flush()
