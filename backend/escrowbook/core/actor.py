"""Identity of whoever asks for a booking change."""

from dataclasses import dataclass
from typing import Optional

from .enums import ActorRole


@dataclass(frozen=True)
class Actor:
    role: ActorRole
    id: Optional[str] = None

    @classmethod
    def scheduler(cls) -> "Actor":
        return cls(ActorRole.SCHEDULER, "scheduler")

    @classmethod
    def ledger(cls) -> "Actor":
        return cls(ActorRole.LEDGER, "ledger")

    @property
    def label(self) -> str:
        """Value stored in history rows and status-change events."""
        return f"{self.role.value}:{self.id}" if self.id else self.role.value

    def is_party(self, booking_party_id: Optional[str]) -> bool:
        return self.id is not None and booking_party_id is not None and self.id == booking_party_id
