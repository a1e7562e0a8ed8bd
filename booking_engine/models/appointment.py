"""Appointment model definition."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from booking_engine.models.base import Base, utcnow

if TYPE_CHECKING:
    from booking_engine.models.client import Client
    from booking_engine.models.therapist import Therapist
else:  # pragma: no cover - typing runtime fallback
    Client = "Client"  # type: ignore[assignment]
    Therapist = "Therapist"  # type: ignore[assignment]

APPOINTMENT_STATUSES = (
    "pending",
    "contacted",
    "negotiating",
    "confirmed",
    "session_held",
    "feedback_requested",
    "completed",
    "cancelled",
)
ACTIVE_STATUSES = ("pending", "contacted", "negotiating")
TERMINAL_STATUSES = ("completed", "cancelled")


class Appointment(Base):
    """Aggregate root for one client/therapist booking negotiation."""

    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_pair_status", "client_id", "therapist_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(
        ForeignKey("clients.id"),
        nullable=False,
    )
    therapist_id: Mapped[int] = mapped_column(
        ForeignKey("therapists.id"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(32),
        default="pending",
        nullable=False,
        index=True,
    )
    tracking_code: Mapped[Optional[str]] = mapped_column(
        String(64),
        unique=True,
        nullable=True,
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    confirmed_datetime_raw: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    confirmed_datetime_parsed: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    human_control_enabled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    human_control_taken_by: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    conversation_state: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )
    # Denormalized health fields read by list views
    checkpoint_stage: Mapped[Optional[str]] = mapped_column(
        String(48),
        nullable=True,
    )
    message_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    is_stale: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    client: Mapped["Client"] = relationship(back_populates="appointments")
    therapist: Mapped["Therapist"] = relationship(back_populates="appointments")
