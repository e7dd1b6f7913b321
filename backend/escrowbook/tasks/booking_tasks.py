# backend/escrowbook/tasks/booking_tasks.py
"""
Celery tasks that drive the time-based booking lifecycle and the ledger monitor.

Both tasks are thin wrappers; the work lives in BookingScheduler and
LedgerEventMonitor so it can also run in-process without a worker.
"""

from typing import Any, Dict

from celery.utils.log import get_task_logger

from escrowbook.services.booking_scheduler import BookingScheduler
from escrowbook.services.ledger_event_monitor import LedgerEventMonitor
from escrowbook.tasks.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(name="escrowbook.scheduler.tick", max_retries=0, queue="scheduler")
def run_scheduler_tick() -> Dict[str, Any]:
    """Run one scheduler tick and return its counters."""
    result = BookingScheduler().tick()
    return {
        "started": result.started,
        "completed": result.completed,
        "completion_requested": result.completion_requested,
        "reminders": result.reminders,
        "stale_completions": result.stale_completions,
        "skipped": result.skipped,
        "failed": result.failed,
    }


@celery_app.task(name="escrowbook.ledger.poll_events", max_retries=0, queue="ledger")
def poll_ledger_events() -> Dict[str, Any]:
    """Ingest new ledger events and apply every open one."""
    result = LedgerEventMonitor().poll_once()
    if result.recorded:
        logger.info("Recorded %s ledger events (cursor=%s)", result.recorded, result.cursor)
    return {
        "fetched": result.fetched,
        "recorded": result.recorded,
        "cursor": result.cursor,
        "outcomes": dict(result.outcomes),
    }
