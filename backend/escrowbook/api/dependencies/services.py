# backend/escrowbook/api/dependencies/services.py
"""
Service layer dependencies for dependency injection.

This module provides factory functions that create service instances
with their required dependencies properly injected.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from ...services.availability_service import AvailabilityService
from ...services.booking_service import BookingService
from ...services.cache_service import CacheService, get_cache_service
from ...services.offering_service import OfferingService
from .database import get_db


@lru_cache(maxsize=1)
def get_cache_service_singleton() -> CacheService:
    """Get singleton cache service instance."""
    return get_cache_service()


def get_cache_service_dep() -> CacheService:
    """Get cache service instance for dependency injection."""
    return get_cache_service_singleton()


def get_booking_service(
    db: Session = Depends(get_db), cache: CacheService = Depends(get_cache_service_dep)
) -> BookingService:
    return BookingService(db, cache=cache)


def get_offering_service(
    db: Session = Depends(get_db), cache: CacheService = Depends(get_cache_service_dep)
) -> OfferingService:
    return OfferingService(db, cache=cache)


def get_availability_service(
    db: Session = Depends(get_db), cache: CacheService = Depends(get_cache_service_dep)
) -> AvailabilityService:
    return AvailabilityService(db, cache=cache)
