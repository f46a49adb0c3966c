"""Server provisioning and node deployment endpoints.

Both operations take minutes, so the handlers start them in the background
and return the accepted hosts; progress shows up in the server's deploy
status and logs.

A deploy only touches servers registered for the requested service; the
others come back as skipped.  With ``peers = ["auto_p2p", <baremetal>...]``
each server gets its own peer list so the batch wires itself into a mesh.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from nodefleet.auth import require_api_key
from nodefleet.deps import ServicesDep, resolve_servers
from nodefleet.models.commands import DeployParams
from nodefleet.models.nodes import DeployStatus, ServiceType
from nodefleet.models.responses import (
    AcceptedResponse,
    DeployRequest,
    ServerLogsResponse,
    SetupRequest,
)
from nodefleet.services.container import ServiceContainer
from nodefleet.services.peers import assemble_p2p_peers, is_auto_p2p

router = APIRouter(tags=["deployment"], dependencies=[Depends(require_api_key)])


@router.post("/setup", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def setup_servers(
    req: SetupRequest,
    services: ServiceContainer = ServicesDep,
) -> AcceptedResponse:
    """Install OS packages on fresh servers."""
    records = await resolve_servers(req.servers, services)
    accepted, skipped = [], []
    for record in records:
        if services.executor.is_busy(record.server):
            skipped.append(record.server)
            continue
        services.orchestrator.spawn(services.orchestrator.setup_node(record.credentials()))
        accepted.append(record.server)
    return AcceptedResponse(accepted=accepted, skipped=skipped)


@router.post("/deploy", response_model=AcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def deploy(
    req: DeployRequest,
    services: ServiceContainer = ServicesDep,
) -> AcceptedResponse:
    """Fresh-install and start a node on every listed server."""
    if req.service == ServiceType.lite_node and (not req.epoch_file_url or not req.peers):
        raise HTTPException(
            status_code=400,
            detail="Lite node deployment needs epoch_file_url and peers",
        )

    records = await resolve_servers(req.servers, services)
    for record in records:
        if record.status != DeployStatus.active:
            raise HTTPException(
                status_code=400,
                detail=f"Server {record.server} is not active, exclude it from deployment",
            )
    deployable = [r for r in records if req.service in r.services]
    skipped = [r.server for r in records if req.service not in r.services]
    if not deployable:
        raise HTTPException(
            status_code=400,
            detail=f"None of the servers is registered for {req.service.value}",
        )

    peer_map: dict[str, list[str]] = {}
    if is_auto_p2p(req.peers):
        baremetal = req.peers[1:]
        if not baremetal:
            raise HTTPException(
                status_code=400,
                detail="No baremetal nodes specified for P2P connections",
            )
        peer_map = assemble_p2p_peers([r.server for r in deployable], baremetal)

    busy = [
        r.server for r in deployable
        if services.orchestrator.is_deploying(r.server, req.service)
    ]
    if busy:
        raise HTTPException(
            status_code=409,
            detail=f"Deploy already in progress on: {', '.join(busy)}",
        )

    for record in deployable:
        params = DeployParams(
            binary_url=req.binary_url,
            epoch_file_url=req.epoch_file_url,
            peers=peer_map.get(record.server, req.peers),
            system_ram_gb=record.ram_gb,
            logging_passcode=req.logging_passcode,
        )
        services.orchestrator.spawn(
            services.orchestrator.deploy_node(record.credentials(), req.service, params)
        )
    return AcceptedResponse(accepted=[r.server for r in deployable], skipped=skipped)


@router.get("/servers/{server}/logs", response_model=ServerLogsResponse)
async def server_logs(
    server: str,
    services: ServiceContainer = ServicesDep,
) -> ServerLogsResponse:
    """Setup and deploy logs plus deploy status of one server."""
    record = await services.store.find_server_by_host(server)
    if record is None:
        raise HTTPException(status_code=404, detail="Server not found")
    return ServerLogsResponse(
        server=record.server,
        status=record.status.value,
        deploy_status={k.value: v.value for k, v in record.deploy_status.items()},
        setup_logs=record.setup_logs,
        deploy_logs={k.value: v for k, v in record.deploy_logs.items()},
    )
