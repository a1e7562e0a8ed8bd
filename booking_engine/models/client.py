"""Client model definition."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from booking_engine.models.base import Base, utcnow

if TYPE_CHECKING:
    from booking_engine.models.appointment import Appointment
else:  # pragma: no cover - typing runtime fallback
    Appointment = "Appointment"  # type: ignore[assignment]


class Client(Base):
    """Person requesting therapy sessions over email."""

    __tablename__ = "clients"

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
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    appointments: Mapped[List["Appointment"]] = relationship(
        back_populates="client",
    )
