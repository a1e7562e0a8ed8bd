"""Admin dashboard endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from booking_engine.routers import get_container
from booking_engine.services.container import ServiceContainer
from booking_engine.services.lifecycle import TransitionResult

LOGGER = logging.getLogger(__name__)

router = APIRouter()

EVENT_KEEPALIVE_SECONDS = 15.0


class AdminUpdateRequest(BaseModel):
    actor_id: str = Field(min_length=1)
    status: Optional[str] = None
    confirmed_datetime: Optional[str] = None
    reason: Optional[str] = None
    send_emails: bool = False
    expected_version: Optional[int] = None


class HumanControlRequest(BaseModel):
    enabled: bool
    actor_id: str = Field(min_length=1)
    expected_version: Optional[int] = None


@router.patch("/appointments/{appointment_id}", response_model=TransitionResult)
async def admin_update(
    appointment_id: int,
    payload: AdminUpdateRequest,
    container: ServiceContainer = Depends(get_container),
) -> TransitionResult:
    """Manual correction; only allowed while human control is enabled."""

    return await container.lifecycle.admin_update(
        appointment_id,
        actor_id=payload.actor_id,
        status=payload.status,
        confirmed_datetime=payload.confirmed_datetime,
        reason=payload.reason,
        send_emails=payload.send_emails,
        expected_version=payload.expected_version,
    )


@router.post("/appointments/{appointment_id}/human-control")
async def set_human_control(
    appointment_id: int,
    payload: HumanControlRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    version = await container.lifecycle.set_human_control(
        appointment_id,
        payload.enabled,
        actor_id=payload.actor_id,
        expected_version=payload.expected_version,
    )
    return {"appointment_id": appointment_id, "human_control_enabled": payload.enabled, "version": version}


@router.post("/jobs/{name}/run", status_code=202)
async def run_job(
    name: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Run a background job now. Answers 409 if another instance is running it."""

    if name not in container.scheduler.job_names:
        raise HTTPException(status_code=404, detail=f"Unknown job: {name}")
    result = await container.scheduler.trigger(name)
    return {"job": name, "result": result}


@router.post("/tracking-codes/repair")
async def repair_tracking_codes(
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    repair = container.tracking_repair
    legacy = await repair.migrate_legacy()
    duplicates = await repair.fix_duplicates()
    backfill = await repair.backfill_missing()
    return {
        "legacy": asdict(legacy),
        "duplicates": asdict(duplicates),
        "backfill": asdict(backfill),
    }


@router.get("/circuits")
async def circuit_stats(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    stats = container.registry.all_stats()
    return {
        "any_open": container.registry.any_open(),
        "circuits": {name: item.model_dump(mode="json") for name, item in stats.items()},
    }


@router.post("/circuits/reset")
async def reset_circuits(container: ServiceContainer = Depends(get_container)) -> Dict[str, str]:
    container.registry.reset_all()
    LOGGER.warning("All circuit breakers reset by admin")
    return {"status": "reset"}


@router.get("/events")
async def status_events(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> StreamingResponse:
    """Server-sent stream of status changes for the live dashboard."""

    async def stream() -> AsyncIterator[str]:
        async with container.events.subscription() as queue:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=EVENT_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: status_changed\ndata: {json.dumps(event.to_dict())}\n\n"

    return StreamingResponse(stream(), media_type="text/event-stream")
