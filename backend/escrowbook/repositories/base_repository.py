# backend/escrowbook/repositories/base_repository.py
"""
Base Repository for the escrow booking core

Shared data access for the concrete repositories:
- Primary key lookups wrapped in RepositoryException
- Dialect-aware insert-or-ignore for append-only logs (ledger events, outbox)

Repositories never commit; the owning service decides the transaction
boundary.
"""

import logging
from typing import Any, Dict, Generic, Optional, Sequence, Type, TypeVar

from sqlalchemy import insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """
    Base repository bound to one model.

    Attributes:
        db: SQLAlchemy session (managed by the service layer)
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @property
    def dialect_name(self) -> str:
        bind = self.db.get_bind()
        return bind.dialect.name.lower() if bind is not None else "postgresql"

    def get_by_id(self, id: str) -> Optional[T]:
        """Retrieve an entity by its primary key."""
        try:
            return self.db.get(self.model, id)
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting {self.model.__name__} by id {id}: {str(e)}")
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {str(e)}")

    def add(self, entity: T) -> T:
        """Stage a new entity and flush it so generated ids are available."""
        try:
            self.db.add(entity)
            self.db.flush()
            return entity
        except SQLAlchemyError as e:
            self.logger.error(f"Error adding {self.model.__name__}: {str(e)}")
            raise RepositoryException(f"Failed to add {self.model.__name__}: {str(e)}")

    def insert_or_ignore(self, values: Dict[str, Any], conflict_columns: Sequence[str]) -> bool:
        """
        Insert one row unless it collides with a unique key.

        Returns True when the row was inserted, False when an equal row
        already existed.
        """
        dialect = self.dialect_name
        if dialect == "postgresql":
            stmt = (
                pg_insert(self.model)
                .values(**values)
                .on_conflict_do_nothing(index_elements=list(conflict_columns))
            )
        else:
            stmt = insert(self.model).values(**values)
            if dialect == "sqlite":
                stmt = stmt.prefix_with("OR IGNORE")
        try:
            result = self.db.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error(f"Error inserting {self.model.__name__}: {str(e)}")
            raise RepositoryException(f"Failed to insert {self.model.__name__}: {str(e)}")
        return bool(getattr(result, "rowcount", 0))
