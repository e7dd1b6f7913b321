# backend/escrowbook/tasks/celery_app.py
"""
Celery application for the escrow booking core.

Redis is broker and result backend. Three periodic jobs run under beat:
the scheduler tick, the ledger event poll and status outbox delivery. Each
lives on its own queue so a slow ledger gateway never delays the tick.
"""

from datetime import datetime, timezone
import logging
import os
from typing import Any, Dict, Type, cast

from celery import Celery, Task
from celery.signals import setup_logging

from escrowbook.core.config import settings

TASK_MODULES = (
    "escrowbook.tasks.booking_tasks",
    "escrowbook.tasks.outbox_tasks",
)

TASK_ROUTES = {
    "escrowbook.scheduler.*": {"queue": "scheduler"},
    "escrowbook.ledger.*": {"queue": "ledger"},
    "escrowbook.outbox.*": {"queue": "notifications"},
}


def _broker_url() -> str:
    url = os.getenv("CELERY_BROKER_URL") or settings.redis_url or "redis://localhost:6379"
    # Redis URLs without a database number default to db 0
    if url.startswith("redis") and not url.rstrip("/").rsplit("/", 1)[-1].isdigit():
        url = f"{url.rstrip('/')}/0"
    return url


def create_celery_app() -> Celery:
    """Build the Celery app with routes and the environment's beat schedule."""
    broker_url = _broker_url()
    app = Celery(
        "escrowbook",
        broker=broker_url,
        backend=os.getenv("CELERY_RESULT_BACKEND") or broker_url,
    )

    app.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,
        # One tick or poll at a time per worker process
        worker_prefetch_multiplier=1,
        worker_hijack_root_logger=False,
        # A tick never outlives the next one
        task_soft_time_limit=max(settings.scheduler_tick_seconds - 5, 10),
        task_time_limit=max(settings.scheduler_tick_seconds, 15),
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        result_expires=3600,
        imports=TASK_MODULES,
        task_routes=TASK_ROUTES,
    )

    from .beat_schedule import get_beat_schedule

    app.conf.beat_schedule = get_beat_schedule(settings.environment)
    return app


@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Keep worker logs in the same format as the API process."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Logs task failures with the task name and id."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).error(
            f"Task {self.name}[{task_id}] failed: {exc}",
            exc_info=True,
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)


celery_app.Task = cast(Type[Task], BaseTask)


@celery_app.task(name="escrowbook.health_check")  # type: ignore[misc]
def health_check() -> Dict[str, str]:
    """Round-trip check that a worker picks up tasks."""
    current_task = celery_app.current_task
    return {
        "status": "healthy",
        "worker": current_task.request.hostname if current_task else "unknown",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
