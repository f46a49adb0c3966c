"""FastAPI dependencies resolving the per-app service container."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from nodefleet.models.nodes import ServerRecord
from nodefleet.services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def resolve_servers(
    hosts: list[str],
    services: ServiceContainer,
) -> list[ServerRecord]:
    """Registered servers with SSH credentials among *hosts*; 404 if none."""
    records = [r for r in await services.store.list_servers(hosts) if r.username]
    if not records:
        raise HTTPException(status_code=404, detail="No matching servers found")
    return records


ServicesDep = Depends(get_services)
