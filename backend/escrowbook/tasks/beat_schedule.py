# backend/escrowbook/tasks/beat_schedule.py
"""
Celery Beat schedule configuration.

The scheduler tick and the ledger poll run on fixed intervals taken from
settings; outbox delivery runs every 30 seconds.
"""

from datetime import timedelta
from typing import Any

from ..core.config import settings

CELERYBEAT_SCHEDULE: dict[str, dict[str, Any]] = {
    "scheduler-tick": {
        "task": "escrowbook.scheduler.tick",
        "schedule": timedelta(seconds=settings.scheduler_tick_seconds),
        "options": {"queue": "scheduler", "expires": settings.scheduler_tick_seconds},
    },
    "ledger-monitor-poll": {
        "task": "escrowbook.ledger.poll_events",
        "schedule": timedelta(seconds=settings.ledger_monitor_interval_seconds),
        "options": {"queue": "ledger", "expires": settings.ledger_monitor_interval_seconds},
    },
    "outbox-dispatch": {
        "task": "escrowbook.outbox.dispatch_pending",
        "schedule": timedelta(seconds=30),
        "options": {"queue": "notifications"},
    },
}

# Per-environment overrides merged over the base schedule
SCHEDULE_CONFIG: dict[str, dict[str, dict[str, Any]]] = {
    "development": {
        "outbox-dispatch": {
            "task": "escrowbook.outbox.dispatch_pending",
            "schedule": timedelta(seconds=10),
            "options": {"queue": "notifications"},
        },
    },
}


def get_beat_schedule(environment: str = "production") -> dict[str, dict[str, Any]]:
    """
    Get the beat schedule for the specified environment.

    Args:
        environment: The environment name (production, development, testing)

    Returns:
        Mapping of task name to Celery beat configuration dict
    """
    base: dict[str, dict[str, Any]] = dict(CELERYBEAT_SCHEDULE)
    overrides = SCHEDULE_CONFIG.get(environment)
    if overrides:
        base.update(overrides)
    return base
