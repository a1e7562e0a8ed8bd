"""SQLAlchemy declarative base for booking engine models."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import DeclarativeBase


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for column defaults."""

    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps read back from stores without offsets."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
