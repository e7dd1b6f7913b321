"""Clients for the escrow ledger gateway, the calendar collaborator and the status webhook."""

from .calendar_client import CalendarClient, CalendarError
from .escrow_ledger_client import EscrowLedgerClient
from .status_webhook import StatusWebhookClient, StatusWebhookError, StatusWebhookTemporaryError

__all__ = [
    "CalendarClient",
    "CalendarError",
    "EscrowLedgerClient",
    "StatusWebhookClient",
    "StatusWebhookError",
    "StatusWebhookTemporaryError",
]
