"""API router initializers."""

from fastapi import APIRouter, Request

from booking_engine.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """Return the service container the lifespan attached to the app."""

    return request.app.state.container


def get_api_router() -> APIRouter:
    """Construct and return the API router."""

    from booking_engine.routers.admin import router as admin_router
    from booking_engine.routers.appointments import router as appointments_router

    api_router = APIRouter()
    api_router.include_router(appointments_router, prefix="/appointments", tags=["appointments"])
    api_router.include_router(admin_router, prefix="/admin", tags=["admin"])
    return api_router
