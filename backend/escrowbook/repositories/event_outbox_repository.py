# backend/escrowbook/repositories/event_outbox_repository.py
"""
Repository for the booking status outbox.

Enqueue happens inside the caller's transaction; the dispatcher reads due
rows and records the outcome of each delivery attempt.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session
import ulid

from ..models.event_outbox import EventOutbox, EventOutboxStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


class EventOutboxRepository(BaseRepository[EventOutbox]):
    def __init__(self, db: Session):
        super().__init__(db, EventOutbox)

    def enqueue(
        self,
        event_type: str,
        aggregate_id: str,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> EventOutbox:
        """
        Queue an event unless its idempotency key is already present.

        Returns the row holding the key, new or existing. An existing row is
        returned untouched.
        """
        due = next_attempt_at or datetime.now(timezone.utc)
        key = idempotency_key or f"{event_type}:{aggregate_id}:{int(due.timestamp())}"
        self.insert_or_ignore(
            {
                "id": str(ulid.ULID()),
                "event_type": event_type,
                "aggregate_id": aggregate_id,
                "payload": payload or {},
                "idempotency_key": key,
                "status": EventOutboxStatus.PENDING.value,
                "attempt_count": 0,
                "next_attempt_at": due,
                "created_at": due,
                "updated_at": due,
            },
            conflict_columns=["idempotency_key"],
        )
        row = self.db.execute(
            select(EventOutbox)
            .where(EventOutbox.idempotency_key == key)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise RuntimeError(f"Outbox row {key} missing after enqueue")
        return row

    def fetch_due(self, now: datetime, limit: int = 200) -> List[EventOutbox]:
        """Pending rows whose next attempt is due, oldest first."""
        stmt = (
            select(EventOutbox)
            .where(EventOutbox.status == EventOutboxStatus.PENDING.value)
            .where(EventOutbox.next_attempt_at <= now)
            .order_by(EventOutbox.next_attempt_at.asc(), EventOutbox.id.asc())
            .limit(limit)
        )
        if self.dialect_name == "postgresql":
            # Concurrent dispatchers split the backlog instead of double-sending
            stmt = stmt.with_for_update(skip_locked=True)
        return list(self.db.execute(stmt).scalars().all())

    def list_for_aggregate(self, aggregate_id: str) -> List[EventOutbox]:
        stmt = (
            select(EventOutbox)
            .where(EventOutbox.aggregate_id == aggregate_id)
            .order_by(EventOutbox.created_at.asc(), EventOutbox.id.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_sent(self, row: EventOutbox, at: datetime) -> None:
        row.attempt_count = (row.attempt_count or 0) + 1
        row.status = EventOutboxStatus.SENT.value
        row.next_attempt_at = None
        row.last_error = None
        row.delivered_at = at
        row.updated_at = at
        self.db.flush()

    def schedule_retry(self, row: EventOutbox, at: datetime, delay_seconds: int, error: str) -> None:
        row.attempt_count = (row.attempt_count or 0) + 1
        row.status = EventOutboxStatus.PENDING.value
        row.next_attempt_at = at + timedelta(seconds=max(delay_seconds, 1))
        row.last_error = error[:MAX_ERROR_LENGTH]
        row.updated_at = at
        self.db.flush()

    def mark_failed(self, row: EventOutbox, at: datetime, error: str) -> None:
        """Give up on a row; it stays for inspection."""
        row.attempt_count = (row.attempt_count or 0) + 1
        row.status = EventOutboxStatus.FAILED.value
        row.next_attempt_at = None
        row.last_error = error[:MAX_ERROR_LENGTH]
        row.updated_at = at
        self.db.flush()
