# backend/escrowbook/routes/offerings.py
"""
Offering routes.

Domain errors raised by the services are converted by the application's
exception handler.

Router Endpoints:
    POST / - Publish an offering (provider only)
    GET / - List a provider's offerings
    GET /{offering_id} - Offering with its schedule
    PUT /{offering_id}/schedule - Replace weekly windows and exceptions
"""

import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, Query, status

from ..api.dependencies import get_current_actor, get_offering_service
from ..core.actor import Actor
from ..schemas.offering import OfferingCreate, OfferingResponse, ScheduleUpdate
from ..services.offering_service import OfferingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/offerings", tags=["offerings"])


@router.post("/", response_model=OfferingResponse, status_code=status.HTTP_201_CREATED)
async def create_offering(
    offering_data: OfferingCreate,
    actor: Actor = Depends(get_current_actor),
    offering_service: OfferingService = Depends(get_offering_service),
) -> OfferingResponse:
    """Publish a new offering for the calling provider."""
    offering = await asyncio.to_thread(offering_service.create_offering, offering_data, actor)
    return OfferingResponse.model_validate(offering)


@router.get("/", response_model=List[OfferingResponse])
async def list_offerings(
    provider_id: str = Query(..., min_length=1),
    actor: Actor = Depends(get_current_actor),
    offering_service: OfferingService = Depends(get_offering_service),
) -> List[OfferingResponse]:
    offerings = await asyncio.to_thread(offering_service.list_for_provider, provider_id)
    return [OfferingResponse.model_validate(o) for o in offerings]


@router.get("/{offering_id}", response_model=OfferingResponse)
async def get_offering(
    offering_id: str,
    actor: Actor = Depends(get_current_actor),
    offering_service: OfferingService = Depends(get_offering_service),
) -> OfferingResponse:
    offering = await asyncio.to_thread(offering_service.get_offering, offering_id)
    return OfferingResponse.model_validate(offering)


@router.put("/{offering_id}/schedule", response_model=OfferingResponse)
async def update_schedule(
    offering_id: str,
    schedule: ScheduleUpdate,
    actor: Actor = Depends(get_current_actor),
    offering_service: OfferingService = Depends(get_offering_service),
) -> OfferingResponse:
    """
    Replace the offering's schedule.

    Windows and exceptions are validated on the way in; cached month views
    for the provider are dropped once the new schedule is committed.
    """
    offering = await asyncio.to_thread(
        offering_service.update_schedule, offering_id, schedule, actor
    )
    return OfferingResponse.model_validate(offering)
