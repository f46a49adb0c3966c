"""Request and response bodies of the HTTP API."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from nodefleet.models.nodes import ProcessLogs, ServiceType


class HealthResponse(BaseModel):
    status: str
    version: str
    lite_nodes: int = 0
    bob_nodes: int = 0


# ── deployment ────────────────────────────────────────────────────────────


class SetupRequest(BaseModel):
    servers: list[str] = Field(min_length=1)


class DeployRequest(BaseModel):
    servers: list[str] = Field(min_length=1)
    service: ServiceType
    binary_url: str
    epoch_file_url: str = ""
    peers: list[str] = []
    logging_passcode: Optional[str] = None

    @field_validator("binary_url")
    @classmethod
    def _check_binary_url(cls, v: str) -> str:
        if not v.startswith("http"):
            raise ValueError("binary_url must be an http(s) URL")
        return v

    @field_validator("logging_passcode")
    @classmethod
    def _check_passcode(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        parts = v.strip().split("-")
        if len(parts) != 4 or not all(p.isdigit() for p in parts):
            raise ValueError("Logging passcode must be four numbers separated by '-'")
        return v.strip()


class AcceptedResponse(BaseModel):
    accepted: list[str]
    skipped: list[str] = []


class ServerLogsResponse(BaseModel):
    server: str
    status: str
    deploy_status: dict[str, str] = {}
    setup_logs: ProcessLogs = ProcessLogs()
    deploy_logs: dict[str, ProcessLogs] = {}


# ── commands ──────────────────────────────────────────────────────────────


class StandardCommandRequest(BaseModel):
    operator: str
    action: Literal["shutdown", "restart"]
    services: list[ServiceType] = Field(min_length=1)
    servers: list[str] = Field(min_length=1)


class CustomCommandRequest(BaseModel):
    operator: str
    command: str = Field(min_length=1)
    servers: list[str] = Field(min_length=1)
    timeout: float = Field(default=30.0, gt=0)


class CommandAcceptedResponse(BaseModel):
    uuid: str
    status: str


# ── nodes ─────────────────────────────────────────────────────────────────


class RandomPeersResponse(BaseModel):
    service: ServiceType
    servers: list[str]


class ShutdownRequest(BaseModel):
    servers: Optional[list[str]] = None


class ShutdownResult(BaseModel):
    server: str
    success: bool
