# backend/escrowbook/main.py
"""
FastAPI application for the escrow booking core.

All business routes live under /api/v1; /health and /metrics sit at the
root for probes and scrapers.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, List

from fastapi import APIRouter, FastAPI

from .core.config import settings
from .database import init_db
from .errors import register_error_handlers
from .middleware.prometheus_middleware import PrometheusMiddleware
from .routes import availability, bookings, health, offerings
from .services.booking_scheduler import BookingScheduler
from .services.ledger_event_monitor import LedgerEventMonitor

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

API_TITLE = "Escrow Booking API"
API_VERSION = "1.0.0"


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create tables and, when configured, own the background workers."""
    logger.info(f"{API_TITLE} starting up (environment={settings.environment})")
    init_db()

    workers: List[BookingScheduler | LedgerEventMonitor] = []
    if settings.run_workers_in_process:
        workers = [BookingScheduler(), LedgerEventMonitor()]
        for worker in workers:
            worker.start()
        logger.info("Scheduler and ledger monitor running in-process")

    yield

    for worker in workers:
        worker.stop()
    logger.info(f"{API_TITLE} shut down")


def create_app() -> FastAPI:
    app = FastAPI(
        title=API_TITLE,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    register_error_handlers(app)
    app.add_middleware(PrometheusMiddleware)

    api_v1 = APIRouter(prefix="/api/v1")
    # Availability paths are nested under /offerings/{id}; mount them first
    api_v1.include_router(availability.router)
    api_v1.include_router(offerings.router)
    api_v1.include_router(bookings.router)

    app.include_router(api_v1)
    app.include_router(health.router)
    return app


app = create_app()
