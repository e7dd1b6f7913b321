"""Downstream booking-status webhook.

Delivers outbox payloads to the collaborator that fans status changes out
to notifications and chat unlock.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

logger = logging.getLogger(__name__)


class StatusWebhookError(RuntimeError):
    """Delivery was refused; retrying will not help."""


class StatusWebhookTemporaryError(StatusWebhookError):
    """Delivery failed in a way worth retrying (transport error, 408/429, 5xx)."""


class StatusWebhookClient:
    def __init__(
        self,
        *,
        url: str,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    def send(self, *, event_type: str, payload: Dict[str, Any], idempotency_key: str) -> None:
        body = {"event_type": event_type, "payload": payload}
        headers = {"Idempotency-Key": idempotency_key, "X-Event-Type": event_type}
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(self._url, json=body, headers=headers)
        except httpx.TransportError as exc:
            raise StatusWebhookTemporaryError(f"Status webhook unreachable: {exc}") from exc

        if response.status_code >= 500 or response.status_code in (408, 429):
            raise StatusWebhookTemporaryError(
                f"Status webhook returned {response.status_code}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise StatusWebhookError(
                f"Status webhook rejected {event_type}: {response.status_code} {response.text[:200]}"
            )
