"""Escrow ledger gateway client.

Submits escrow contract calls (deposit, complete, emergency cancel) through
the ledger gateway's REST API and pages through the contract's event log.
Submissions return a pending transaction reference; the outcome is only
known once the matching event is observed.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, cast

import httpx
from pydantic import SecretStr

from ..core.enums import LedgerOperation, LedgerSigner
from ..core.exceptions import ChainCallFailed, InsufficientPermission

logger = logging.getLogger(__name__)

_OPERATION_PATHS = {
    LedgerOperation.DEPOSIT: "deposit",
    LedgerOperation.COMPLETE: "complete",
    LedgerOperation.EMERGENCY_CANCEL: "emergency-cancel",
}


class EscrowLedgerClient:
    """HTTP client for the escrow ledger gateway."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | SecretStr = "",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._api_key = api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _headers(self, idempotency_key: str | None = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Dict[str, Any]:
        """Make a request to the gateway, mapping failures to domain errors."""
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.request(
                    method,
                    url,
                    headers=self._headers(idempotency_key),
                    json=json_body,
                    params=params,
                )
        except httpx.TransportError as exc:
            logger.error("Ledger gateway unreachable for %s %s: %s", method, path, exc)
            raise ChainCallFailed(
                f"Ledger gateway unreachable: {exc}", operation=operation, retryable=True
            ) from exc

        if response.status_code >= 400:
            try:
                parsed = response.json()
                error_body = parsed if isinstance(parsed, dict) else {"raw": response.text[:500]}
            except ValueError:
                error_body = {"raw": response.text[:500]}
            message = error_body.get("message") or error_body.get("error") or response.text[:500]

            logger.error(
                "Ledger gateway error %s for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text[:500],
            )
            if response.status_code == 403:
                raise InsufficientPermission(
                    f"Ledger rejected {operation}: {message}",
                    details={"operation": operation, "upstream_status": 403},
                )
            raise ChainCallFailed(
                f"Ledger call {operation} failed: {message}",
                operation=operation,
                # 408/429 and 5xx are transient; other 4xx are validation failures
                retryable=response.status_code >= 500 or response.status_code in (408, 429),
                status_code=response.status_code,
            )

        try:
            return cast(Dict[str, Any], response.json())
        except ValueError as exc:
            raise ChainCallFailed(
                "Ledger gateway returned a non-JSON body",
                operation=operation,
                retryable=True,
                status_code=response.status_code,
            ) from exc

    def submit(
        self,
        operation: LedgerOperation,
        booking_id: str,
        *,
        signer: LedgerSigner,
        body: Dict[str, Any] | None = None,
    ) -> str:
        """Submit one escrow call and return the pending transaction reference."""
        payload: Dict[str, Any] = {"signer": signer.value, **(body or {})}
        data = self._request(
            "POST",
            f"bookings/{booking_id}/{_OPERATION_PATHS[operation]}",
            operation=operation.value,
            json_body=payload,
            idempotency_key=f"{booking_id}:{operation.value}",
        )
        tx_ref = data.get("tx_ref")
        if not tx_ref:
            raise ChainCallFailed(
                "Ledger gateway response is missing tx_ref",
                operation=operation.value,
                retryable=False,
                details={"response": data},
            )
        return str(tx_ref)

    def fetch_events(self, from_block: int, limit: int = 100) -> Dict[str, Any]:
        """
        Fetch contract events at or after ``from_block``.

        Returns ``{"events": [...], "latest_block": int}`` as sent by the gateway.
        """
        return self._request(
            "GET",
            "events",
            operation="fetch_events",
            params={"from_block": from_block, "limit": limit},
        )

    def check_connection(self) -> bool:
        try:
            data = self._request("GET", "health", operation="health")
        except (ChainCallFailed, InsufficientPermission):
            return False
        return bool(data.get("ok", True))
