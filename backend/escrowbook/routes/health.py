# backend/escrowbook/routes/health.py
"""
Health and metrics endpoints.

/health reports database connectivity and whether the escrow ledger gateway
answers. /metrics serves the Prometheus exposition.
"""

from datetime import datetime, timezone
import logging
from typing import Dict

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..integrations.escrow_ledger_client import EscrowLedgerClient
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..services.escrow_service import build_ledger_client

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, bool]


def get_ledger_client() -> EscrowLedgerClient:
    return build_ledger_client()


@router.get("/health", response_model=HealthCheckResponse)
def health_check(
    db: Session = Depends(get_db),
    ledger: EscrowLedgerClient = Depends(get_ledger_client),
) -> HealthCheckResponse:
    """
    Basic health check endpoint.

    Returns:
        "healthy" when both checks pass, "degraded" otherwise.
    """
    try:
        db.execute(text("SELECT 1"))
        db_status = True
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        db_status = False

    ledger_status = ledger.check_connection()
    if not ledger_status:
        logger.warning("Escrow ledger gateway is unreachable")

    return HealthCheckResponse(
        status="healthy" if db_status and ledger_status else "degraded",
        service="escrowbook",
        version="1.0.0",
        timestamp=datetime.now(timezone.utc),
        checks={"database": db_status, "ledger": ledger_status},
    )


@router.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=prometheus_metrics.get_content_type(),
        headers={"Cache-Control": "no-store"},
    )
