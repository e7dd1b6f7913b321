# backend/escrowbook/tasks/outbox_tasks.py
"""
Celery tasks for delivering booking status events.

Status changes are written to the outbox in the same transaction as the
booking change. `escrowbook.outbox.dispatch_pending` drains due rows to the
status webhook with per-row backoff, so a slow or failing collaborator never
blocks a booking transition.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, Optional

from celery.utils.log import get_task_logger
from sqlalchemy.orm import Session

from escrowbook.core.config import settings
from escrowbook.database import SessionLocal
from escrowbook.integrations.status_webhook import (
    StatusWebhookClient,
    StatusWebhookError,
    StatusWebhookTemporaryError,
)
from escrowbook.monitoring.prometheus_metrics import prometheus_metrics
from escrowbook.repositories.event_outbox_repository import EventOutboxRepository
from escrowbook.tasks.celery_app import celery_app

logger = get_task_logger(__name__)

BACKOFF_SECONDS = [30, 120, 600, 1800, 7200]


def _next_backoff(attempt_number: int) -> int:
    """Return backoff delay for the given attempt (1-indexed)."""
    index = max(0, min(attempt_number - 1, len(BACKOFF_SECONDS) - 1))
    return BACKOFF_SECONDS[index]


@dataclass
class DispatchResult:
    sent: int = 0
    retrying: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.sent + self.retrying + self.failed


@contextmanager
def _session_scope() -> Iterator[Session]:
    """Provide transactional scope for use in tasks."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def build_webhook() -> Optional[StatusWebhookClient]:
    if not settings.status_webhook_url:
        return None
    return StatusWebhookClient(
        url=settings.status_webhook_url,
        timeout=settings.status_webhook_timeout_seconds,
    )


def deliver_pending_events(
    db: Session,
    webhook: Optional[StatusWebhookClient] = None,
    limit: int = 200,
    now: Optional[datetime] = None,
) -> DispatchResult:
    """
    Deliver due outbox rows and record the outcome of each one.

    Without a configured webhook the rows are marked sent; there is no one
    to deliver them to. Each row is committed on its own.
    """
    repo = EventOutboxRepository(db)
    result = DispatchResult()
    at = now or datetime.now(timezone.utc)
    max_attempts = settings.outbox_max_attempts

    for event in repo.fetch_due(at, limit=limit):
        event_id = str(event.id)
        event_type = str(event.event_type)
        attempt_number = int(event.attempt_count or 0) + 1
        prometheus_metrics.record_outbox_attempt(event_type)

        try:
            if webhook is not None:
                webhook.send(
                    event_type=event_type,
                    payload=dict(event.payload or {}),
                    idempotency_key=str(event.idempotency_key),
                )
        except StatusWebhookTemporaryError as exc:
            if attempt_number >= max_attempts:
                repo.mark_failed(event, at, str(exc))
                db.commit()
                result.failed += 1
                prometheus_metrics.record_outbox_outcome(event_type, "failed")
                logger.error("Outbox event %s failed after %s attempts: %s", event_id, attempt_number, exc)
            else:
                repo.schedule_retry(event, at, _next_backoff(attempt_number), str(exc))
                db.commit()
                result.retrying += 1
                prometheus_metrics.record_outbox_outcome(event_type, "retry")
                logger.warning("Outbox event %s delivery failed, will retry: %s", event_id, exc)
            continue
        except StatusWebhookError as exc:
            repo.mark_failed(event, at, str(exc))
            db.commit()
            result.failed += 1
            prometheus_metrics.record_outbox_outcome(event_type, "failed")
            logger.error("Outbox event %s rejected by status webhook: %s", event_id, exc)
            continue

        repo.mark_sent(event, at)
        db.commit()
        result.sent += 1
        prometheus_metrics.record_outbox_outcome(event_type, "sent")

    return result


@celery_app.task(name="escrowbook.outbox.dispatch_pending", max_retries=0, queue="notifications")
def dispatch_pending() -> int:
    """
    Deliver due status events.

    Returns the number of events handled.
    """
    with _session_scope() as session:
        result = deliver_pending_events(session, build_webhook())
        if result.total:
            logger.info(
                "Outbox dispatch: %s sent, %s retrying, %s failed",
                result.sent,
                result.retrying,
                result.failed,
            )
        return result.total
