"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Type

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from booking_engine.errors import (
    AppointmentNotFoundError,
    BookingEngineError,
    CircuitOpenError,
    ConcurrentModificationError,
    InvalidTransitionError,
    LockNotAcquiredError,
    RateLimitExceededError,
    TherapistUnavailableError,
    ValidationError,
)
from booking_engine.routers import get_api_router
from booking_engine.services.container import ServiceContainer, build_container
from booking_engine.utils.config import Settings, get_settings
from booking_engine.utils.logging import configure_logging

LOGGER = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
ERROR_STATUS_CODES: Dict[Type[BookingEngineError], int] = {
    AppointmentNotFoundError: 404,
    InvalidTransitionError: 400,
    ValidationError: 422,
    ConcurrentModificationError: 409,
    LockNotAcquiredError: 409,
    TherapistUnavailableError: 409,
    RateLimitExceededError: 429,
    CircuitOpenError: 503,
}


def status_code_for(exc: BookingEngineError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


async def booking_error_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
    """Translate service errors into JSON responses."""

    status_code = status_code_for(exc)
    if status_code >= 500:
        LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
    body = {"detail": str(exc), "error": type(exc).__name__}
    headers = None
    if isinstance(exc, CircuitOpenError) and exc.retry_after is not None:
        headers = {"Retry-After": str(max(1, int(exc.retry_after)))}
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """Build the application.

    When ``container`` is given the caller owns its start and stop; otherwise
    the lifespan builds one from settings and tears it down on shutdown.
    """

    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        owned: Optional[ServiceContainer] = None
        if app.state.container is None:
            owned = build_container(settings)
            await owned.start()
            app.state.container = owned
        try:
            yield
        finally:
            if owned is not None:
                await owned.stop()
                app.state.container = None

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.container = container
    app.add_exception_handler(BookingEngineError, booking_error_handler)
    app.include_router(get_api_router())

    @app.get("/health")
    async def health_check(request: Request) -> Dict[str, object]:
        """Return service health status."""

        current: Optional[ServiceContainer] = request.app.state.container
        if current is None:
            return {"status": "ok", "any_circuit_open": False, "circuits": {}}
        any_open = current.registry.any_open()
        circuits = {name: item.model_dump(mode="json") for name, item in current.registry.all_stats().items()}
        return {"status": "degraded" if any_open else "ok", "any_circuit_open": any_open, "circuits": circuits}

    @app.get("/version")
    def version() -> Dict[str, str]:
        """Return application version metadata."""

        return {"version": settings.app_version}

    return app


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""

    settings = get_settings()
    uvicorn.run("booking_engine.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
