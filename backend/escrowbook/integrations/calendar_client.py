"""External calendar collaborator client.

Read-only access to a provider's busy intervals on a linked calendar
platform. Token refresh and account linking belong to the collaborator.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Dict, List, cast

import httpx

logger = logging.getLogger(__name__)


class CalendarError(RuntimeError):
    """Raised when the calendar collaborator cannot answer."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CalendarClient:
    """HTTP client for the calendar collaborator."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def fetch_busy(
        self,
        provider_id: str,
        platform: str,
        start: datetime,
        end: datetime,
    ) -> List[Dict[str, Any]]:
        """Return raw busy entries, each tagged with the calendar timezone when one is reported."""
        url = f"{self._base_url}/providers/{provider_id}/busy"
        params = {"platform": platform, "start": start.isoformat(), "end": end.isoformat()}
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.get(url, params=params, headers={"Accept": "application/json"})
        except httpx.TransportError as exc:
            raise CalendarError(f"Calendar collaborator unreachable: {exc}") from exc

        if response.status_code == 404:
            # No linked calendar on this platform
            return []
        if response.status_code >= 400:
            raise CalendarError(
                f"Calendar collaborator error: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise CalendarError("Calendar collaborator returned a non-JSON body") from exc

        busy = body.get("busy", []) if isinstance(body, dict) else []
        calendar_tz = body.get("timezone") if isinstance(body, dict) else None
        entries: List[Dict[str, Any]] = []
        for item in cast(List[Any], busy):
            if isinstance(item, dict) and item.get("start") and item.get("end"):
                entries.append({**item, "timezone": item.get("timezone") or calendar_tz})
        return entries
