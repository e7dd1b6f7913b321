"""Escrow mirror data access."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.escrow import EscrowRecord
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class EscrowRepository(BaseRepository[EscrowRecord]):
    def __init__(self, db: Session):
        super().__init__(db, EscrowRecord)

    def get_for_booking(self, booking_id: str) -> Optional[EscrowRecord]:
        stmt = (
            select(EscrowRecord)
            .where(EscrowRecord.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()
