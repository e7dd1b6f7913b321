"""
Repository layer for the escrow booking core.

Usage:
    from escrowbook.repositories import RepositoryFactory

    repository = RepositoryFactory.create_booking_repository(db)
    due = repository.get_due_to_start(now)
"""

from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .escrow_repository import EscrowRepository
from .event_outbox_repository import EventOutboxRepository
from .factory import RepositoryFactory
from .ledger_event_repository import LedgerEventRepository
from .offering_repository import OfferingRepository

__all__ = [
    "BaseRepository",
    "BookingRepository",
    "EscrowRepository",
    "EventOutboxRepository",
    "LedgerEventRepository",
    "OfferingRepository",
    "RepositoryFactory",
]
