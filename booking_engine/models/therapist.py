"""Therapist model definition."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from booking_engine.models.base import Base, utcnow

if TYPE_CHECKING:
    from booking_engine.models.appointment import Appointment
else:  # pragma: no cover - typing runtime fallback
    Appointment = "Appointment"  # type: ignore[assignment]


class Therapist(Base):
    """Therapist receiving booking requests, with denormalized capacity state."""

    __tablename__ = "therapists"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(
        String(16),
        unique=True,
        nullable=False,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    active_request_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    frozen_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    has_confirmed_booking: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    appointments: Mapped[List["Appointment"]] = relationship(
        back_populates="therapist",
    )
