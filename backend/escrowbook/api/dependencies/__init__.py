# backend/escrowbook/api/dependencies/__init__.py
"""
Central export point for all dependencies.
"""

from .auth import get_current_actor
from .database import get_db
from .services import (
    get_availability_service,
    get_booking_service,
    get_cache_service_dep,
    get_offering_service,
)

__all__ = [
    "get_current_actor",
    "get_db",
    "get_availability_service",
    "get_booking_service",
    "get_cache_service_dep",
    "get_offering_service",
]
