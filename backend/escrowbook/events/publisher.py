"""Event publisher - writes domain events to the outbox inside the caller's transaction."""
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from ..repositories.event_outbox_repository import EventOutboxRepository


class Event(Protocol):
    """Protocol for event types."""

    event_type: str

    def idempotency_key(self) -> str:
        ...

    def to_dict(self) -> Dict[str, Any]:
        ...


class EventPublisher:
    """Publishes domain events to the outbox for async delivery."""

    def __init__(self, outbox_repository: EventOutboxRepository):
        self.outbox_repo = outbox_repository

    def publish(self, event: Event, aggregate_id: str, at: Optional[datetime] = None) -> None:
        """
        Queue an event for delivery.

        The outbox row commits or rolls back with the surrounding transaction,
        so a status change and its notification are never split.
        """
        payload = event.to_dict()

        # Convert datetime objects to ISO strings for JSON serialization
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()

        self.outbox_repo.enqueue(
            event_type=event.event_type,
            aggregate_id=aggregate_id,
            payload=payload,
            idempotency_key=event.idempotency_key(),
            next_attempt_at=at,
        )
