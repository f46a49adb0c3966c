"""Fan-out commands with an audit log."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from nodefleet.auth import require_api_key
from nodefleet.deps import ServicesDep, resolve_servers
from nodefleet.models.commands import CommandLog
from nodefleet.models.responses import (
    CommandAcceptedResponse,
    CustomCommandRequest,
    StandardCommandRequest,
)
from nodefleet.services.container import ServiceContainer
from nodefleet.utils.logging import get_logger

log = get_logger(__name__)

router = APIRouter(
    prefix="/commands",
    tags=["commands"],
    dependencies=[Depends(require_api_key)],
)


@router.post(
    "/standard",
    response_model=CommandAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def standard_command(
    req: StandardCommandRequest,
    services: ServiceContainer = ServicesDep,
) -> CommandAcceptedResponse:
    """Shutdown or restart services across servers."""
    records = await resolve_servers(req.servers, services)
    entry = await services.orchestrator.submit_standard_command(
        req.operator, req.action, req.services, records,
    )
    return CommandAcceptedResponse(uuid=entry.uuid, status=entry.status.value)


@router.post(
    "/custom",
    response_model=CommandAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def custom_command(
    req: CustomCommandRequest,
    services: ServiceContainer = ServicesDep,
) -> CommandAcceptedResponse:
    """Run a free-form or shortcut command on every listed server."""
    records = await resolve_servers(req.servers, services)
    try:
        entry = await services.orchestrator.submit_custom_command(
            req.operator, req.command, records, req.timeout,
        )
    except ValueError as exc:
        log.warning("command.rejected", command=req.command, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))
    return CommandAcceptedResponse(uuid=entry.uuid, status=entry.status.value)


@router.get("/{uuid}", response_model=CommandLog)
async def get_command(
    uuid: str,
    services: ServiceContainer = ServicesDep,
) -> CommandLog:
    entry = await services.store.get_command_log(uuid)
    if entry is None:
        raise HTTPException(status_code=404, detail="Command log not found")
    return entry
