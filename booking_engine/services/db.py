"""Database session management utilities."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from booking_engine.errors import SerializationConflictError
from booking_engine.models import Base

LOGGER = logging.getLogger(__name__)

SERIALIZATION_SQLSTATES = {"40001", "40P01"}
SERIALIZATION_MARKERS = (
    "could not serialize access",
    "database is locked",
    "deadlock detected",
)


def is_serialization_failure(exc: DBAPIError) -> bool:
    """Return True when the store aborted a transaction to keep it serializable."""

    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in SERIALIZATION_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(marker in message for marker in SERIALIZATION_MARKERS)


def _install_sqlite_transaction_hooks(engine: AsyncEngine) -> None:
    """Make SQLite take the write lock at BEGIN so transactions run one at a time."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Owns the async engine and hands out transactional sessions."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo)
        self._is_sqlite = self.engine.dialect.name == "sqlite"
        if self._is_sqlite:
            _install_sqlite_transaction_hooks(self.engine)
        self.sessionmaker = async_sessionmaker(
            self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        session: AsyncSession = self.sessionmaker()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def serializable(self) -> AsyncIterator[AsyncSession]:
        """Transactional scope at SERIALIZABLE isolation.

        Store-level serialization failures and unique-key races are raised as
        ``SerializationConflictError`` so the HTTP boundary can answer 409.
        The transaction is never retried here; retry policy belongs to the
        caller.
        """

        session: AsyncSession = self.sessionmaker()
        try:
            options: Dict[str, Any] = {}
            if not self._is_sqlite:
                options["isolation_level"] = "SERIALIZABLE"
            await session.connection(execution_options=options)
            yield session
            await session.commit()
        except DBAPIError as exc:
            await session.rollback()
            if isinstance(exc, IntegrityError) or is_serialization_failure(exc):
                LOGGER.info("Serializable transaction aborted: %s", exc.orig)
                raise SerializationConflictError(
                    "Concurrent request conflict, please retry"
                ) from exc
            raise
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
