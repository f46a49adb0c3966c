"""Server, registered-node and live-status models."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Unset / default logging passcode reported by freshly deployed lite nodes
DEFAULT_PASSCODE = "0-0-0-0"


class ServiceType(str, Enum):
    lite_node = "liteNode"
    bob_node = "bobNode"


class DeployStatus(str, Enum):
    setting_up = "setting_up"
    active = "active"
    error = "error"
    stopped = "stopped"
    restarting = "restarting"


# ---------------------------------------------------------------------------
# Store documents
# ---------------------------------------------------------------------------


class LiteNode(BaseModel):
    """A server registered to run the lite node."""

    server: str
    operator: str = ""
    is_private: bool = False
    ids: list[str] = Field(default_factory=list)
    group_id: str = ""
    passcode: Optional[str] = None

    @property
    def has_default_passcode(self) -> bool:
        return not self.passcode or self.passcode.strip() == DEFAULT_PASSCODE


class BobNode(BaseModel):
    """A server registered to run the bob node."""

    server: str
    operator: str = ""
    is_private: bool = False


class ProcessLogs(BaseModel):
    stdout: str = ""
    stderr: str = ""


class ServerRecord(BaseModel):
    """Managed server as kept by the persistent store."""

    server: str
    ssh_port: int = 22
    alias: str = ""
    operator: str = ""
    username: str = ""
    password: str = ""
    ssh_private_key: str = ""
    services: list[ServiceType] = Field(default_factory=list)
    cpu: str = ""
    os: str = ""
    ram: str = ""
    status: DeployStatus = DeployStatus.setting_up
    ip_info: dict[str, Any] = Field(default_factory=dict)
    setup_logs: ProcessLogs = Field(default_factory=ProcessLogs)
    deploy_status: dict[ServiceType, DeployStatus] = Field(default_factory=dict)
    deploy_logs: dict[ServiceType, ProcessLogs] = Field(default_factory=dict)

    @property
    def ram_gb(self) -> int:
        """Leading integer of the ``free -h`` total (``"62Gi"`` -> 62)."""
        digits = ""
        for ch in self.ram.strip():
            if not ch.isdigit():
                break
            digits += ch
        return int(digits) if digits else 0

    def credentials(self) -> ServerCredentials:
        return ServerCredentials(
            host=self.server,
            username=self.username,
            password=self.password,
            private_key=self.ssh_private_key,
            port=self.ssh_port,
        )


class ServerCredentials(BaseModel):
    """Immutable SSH login snapshot for a single executor call."""

    model_config = ConfigDict(frozen=True)

    host: str
    username: str
    password: str = ""
    private_key: str = ""
    port: int = 22

    @field_validator("private_key")
    @classmethod
    def _unescape_newlines(cls, v: str) -> str:
        # Keys pasted through JSON forms often arrive with literal "\n"
        return v.replace("\\n", "\n")


# ---------------------------------------------------------------------------
# Live status (poller)
# ---------------------------------------------------------------------------


class LiteNodeTickInfo(BaseModel):
    """Payload of ``GET /tick-info`` on a lite node."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tick: int = -1
    epoch: int = -1
    aligned_votes: int = Field(default=-1, alias="alignedVotes")
    misaligned_votes: int = Field(default=-1, alias="misalignedVotes")
    initial_tick: int = Field(default=-1, alias="initialTick")
    main_aux_status: int = Field(default=-1, alias="mainAuxStatus")
    is_saving_snapshot: bool = Field(default=False, alias="isSavingSnapshot")


class BobNodeTickInfo(BaseModel):
    """Payload of ``GET /status`` on a bob node."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    current_processing_epoch: int = Field(default=-1, alias="currentProcessingEpoch")
    current_fetching_tick: int = Field(default=-1, alias="currentFetchingTick")
    current_fetching_log_tick: int = Field(default=-1, alias="currentFetchingLogTick")
    current_verify_logging_tick: int = Field(
        default=-1, alias="currentVerifyLoggingTick",
    )
    current_indexing_tick: int = Field(default=-1, alias="currentIndexingTick")
    initial_tick: int = Field(default=-1, alias="initialTick")
    bob_version: str = Field(default="", alias="bobVersion")


class LiteNodeStatus(LiteNodeTickInfo):
    operator: str = ""
    ip_info: dict[str, Any] = Field(default_factory=dict, alias="ipInfo")
    group_id: str = Field(default="", alias="groupId")
    last_updated: int = Field(default=-1, alias="lastUpdated")
    last_tick_changed: int = Field(default=-1, alias="lastTickChanged")


class BobNodeStatus(BobNodeTickInfo):
    operator: str = ""
    ip_info: dict[str, Any] = Field(default_factory=dict, alias="ipInfo")
    last_updated: int = Field(default=-1, alias="lastUpdated")
    last_tick_changed: int = Field(default=-1, alias="lastTickChanged")


class NetworkStatus(BaseModel):
    tick: int = 0
    epoch: int = 0
