# backend/escrowbook/repositories/factory.py
"""
Repository Factory for the escrow booking core

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

# Avoid circular imports
if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .escrow_repository import EscrowRepository
    from .event_outbox_repository import EventOutboxRepository
    from .ledger_event_repository import LedgerEventRepository
    from .offering_repository import OfferingRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_offering_repository(db: Session) -> "OfferingRepository":
        from .offering_repository import OfferingRepository

        return OfferingRepository(db)

    @staticmethod
    def create_escrow_repository(db: Session) -> "EscrowRepository":
        from .escrow_repository import EscrowRepository

        return EscrowRepository(db)

    @staticmethod
    def create_ledger_event_repository(db: Session) -> "LedgerEventRepository":
        from .ledger_event_repository import LedgerEventRepository

        return LedgerEventRepository(db)

    @staticmethod
    def create_event_outbox_repository(db: Session) -> "EventOutboxRepository":
        from .event_outbox_repository import EventOutboxRepository

        return EventOutboxRepository(db)
