"""Live node status, network status and peer selection."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query

from nodefleet.auth import require_api_key
from nodefleet.deps import ServicesDep
from nodefleet.models.nodes import NetworkStatus, ServiceType
from nodefleet.models.responses import (
    RandomPeersResponse,
    ShutdownRequest,
    ShutdownResult,
)
from nodefleet.services.container import ServiceContainer
from nodefleet.services.peers import random_bob_nodes, random_lite_nodes

router = APIRouter(prefix="/nodes", tags=["nodes"])


@router.get("/status")
async def node_status(services: ServiceContainer = ServicesDep) -> dict[str, list[dict[str, Any]]]:
    """Status tables of every registered lite and bob node."""
    return services.poller.get_status()


@router.get("/network-status", response_model=NetworkStatus)
async def network_status(services: ServiceContainer = ServicesDep) -> NetworkStatus:
    return services.poller.get_network_status()


@router.get("/random-peers", response_model=RandomPeersResponse)
async def random_peers(
    service: ServiceType,
    n: int = Query(default=4, ge=1, le=256),
    need_logging_passcode: bool = False,
    services: ServiceContainer = ServicesDep,
) -> RandomPeersResponse:
    """Up to *n* active nodes picked at random."""
    if service == ServiceType.lite_node:
        nodes = random_lite_nodes(services.poller, n, need_logging_passcode)
    else:
        nodes = random_bob_nodes(services.poller, n)
    return RandomPeersResponse(service=service, servers=[node.server for node in nodes])


@router.post(
    "/refresh",
    dependencies=[Depends(require_api_key)],
)
async def refresh_nodes(services: ServiceContainer = ServicesDep) -> dict[str, int]:
    """Reload the registered-node lists after a registration or removal."""
    await services.poller.refresh_registered_nodes()
    return {
        "liteNodes": len(services.poller.lite_nodes),
        "bobNodes": len(services.poller.bob_nodes),
    }


@router.post(
    "/request-shutdown",
    response_model=list[ShutdownResult],
    dependencies=[Depends(require_api_key)],
)
async def request_shutdown(
    req: ShutdownRequest,
    services: ServiceContainer = ServicesDep,
) -> list[ShutdownResult]:
    """Ask lite nodes to shut down over HTTP (all of them when no list is given)."""
    if req.servers is None:
        results = await services.poller.request_shutdown_all()
        return [ShutdownResult(**r) for r in results]
    return [
        ShutdownResult(server=s, success=await services.poller.request_shutdown(s))
        for s in req.servers
    ]
