"""Health-check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from nodefleet import __version__
from nodefleet.deps import ServicesDep
from nodefleet.models.responses import HealthResponse
from nodefleet.services.container import ServiceContainer

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def service_health(services: ServiceContainer = ServicesDep) -> HealthResponse:
    """Basic liveness check (no auth required)."""
    return HealthResponse(
        status="ok",
        version=__version__,
        lite_nodes=len(services.poller.lite_nodes),
        bob_nodes=len(services.poller.bob_nodes),
    )
