"""Command-related data structures."""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

# Bucket key for interactive output and for connection-level errors
SHELL_KEY = "shell"


class ErrorKind(str, Enum):
    connection = "connection"
    script = "script"
    timeout = "timeout"
    configuration = "configuration"
    busy = "busy"


class ExecutionResult(BaseModel):
    """Outcome of one executor call.

    ``stdouts``/``stderrs`` are keyed by the literal command text in
    non-interactive mode and by ``"shell"`` in interactive mode.
    """

    stdouts: dict[str, str] = Field(default_factory=dict)
    stderrs: dict[str, str] = Field(default_factory=dict)
    is_success: bool = False
    duration: float = 0.0
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def failure(cls, message: str, kind: ErrorKind | None = None) -> ExecutionResult:
        return cls(stderrs={SHELL_KEY: message}, is_success=False, error_kind=kind)

    def add_stdout(self, key: str, text: str) -> None:
        self.stdouts[key] = self.stdouts.get(key, "") + text

    def add_stderr(self, key: str, text: str) -> None:
        self.stderrs[key] = self.stderrs.get(key, "") + text

    @property
    def stdout_text(self) -> str:
        return "\n".join(self.stdouts.values())

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderrs.values())


class SetupResult(ExecutionResult):
    """Provisioning outcome plus the discovered system facts."""

    cpu: str = ""
    os: str = ""
    ram: str = ""


class DeployParams(BaseModel):
    binary_url: str
    epoch_file_url: str = ""
    peers: list[str] = Field(default_factory=list)
    system_ram_gb: int = 0
    logging_passcode: Optional[str] = None


class CommandStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class CommandLog(BaseModel):
    """Audit record for a command fanned out to one or more servers."""

    uuid: str = Field(default_factory=lambda: str(uuid4()))
    operator: str
    servers: list[str] = Field(default_factory=list)
    command: str
    is_standard_command: bool = False
    stdout: str = ""
    stderr: str = ""
    status: CommandStatus = CommandStatus.pending
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))
    duration: float = 0.0
    error_servers: list[str] = Field(default_factory=list)
