"""Appointment endpoints used by the booking form and the email agent."""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from booking_engine.errors import DuplicateRequestError
from booking_engine.routers import get_container
from booking_engine.services.appointment_requests import AppointmentRequest, CreationResult
from booking_engine.services.container import ServiceContainer
from booking_engine.services.lifecycle import TransitionResult

LOGGER = logging.getLogger(__name__)

router = APIRouter()


class StatusUpdateRequest(BaseModel):
    status: str
    source: Literal["agent", "system", "feedback_sync"] = "agent"
    actor_id: Optional[str] = None
    reason: Optional[str] = None
    confirmed_datetime: Optional[str] = None
    send_emails: bool = True
    expected_version: Optional[int] = None


class MessageRequest(BaseModel):
    role: Literal["client", "therapist", "agent"]
    content: str = Field(min_length=1)
    sender: Optional[str] = None
    last_action: Optional[str] = None
    expected_version: Optional[int] = None


@router.post("", response_model=CreationResult, status_code=status.HTTP_201_CREATED)
async def create_appointment(
    payload: AppointmentRequest,
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> CreationResult:
    """Create an appointment request, or return the one an equivalent request made."""

    try:
        return await container.requests.create(payload)
    except DuplicateRequestError as exc:
        LOGGER.info("Duplicate request for appointment %s (%s)", exc.appointment_id, exc.reason)
        response.status_code = status.HTTP_200_OK
        return CreationResult(
            appointment_id=exc.appointment_id,
            tracking_code=exc.tracking_code,
            status=exc.status,
            deduplicated=True,
        )


@router.post("/{appointment_id}/status", response_model=TransitionResult)
async def update_status(
    appointment_id: int,
    payload: StatusUpdateRequest,
    container: ServiceContainer = Depends(get_container),
) -> TransitionResult:
    return await container.lifecycle.update_status(
        appointment_id,
        payload.status,
        source=payload.source,
        actor_id=payload.actor_id,
        reason=payload.reason,
        confirmed_datetime=payload.confirmed_datetime,
        send_emails=payload.send_emails,
        expected_version=payload.expected_version,
    )


@router.post("/{appointment_id}/messages")
async def append_message(
    appointment_id: int,
    payload: MessageRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Record an inbound or outbound email and return the refreshed checkpoint."""

    return await container.lifecycle.append_message(
        appointment_id,
        role=payload.role,
        content=payload.content,
        sender=payload.sender,
        last_action=payload.last_action,
        expected_version=payload.expected_version,
    )


@router.get("/{appointment_id}/checkpoint")
async def get_checkpoint(
    appointment_id: int,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    return await container.lifecycle.get_checkpoint(appointment_id)
