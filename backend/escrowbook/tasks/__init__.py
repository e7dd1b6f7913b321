# backend/escrowbook/tasks/__init__.py
"""
Background tasks for the escrow booking core.

Import the Celery app here so `celery -A escrowbook.tasks worker` finds it.
"""

from .celery_app import celery_app

__all__ = ["celery_app"]
