"""Persistent-store contract and the in-memory implementation.

The production deployment keeps servers, registered nodes and command logs
in a document database; the control plane only talks to it through
``NodeStore``.  ``InMemoryNodeStore`` backs tests and single-process
deployments and can be seeded from a JSON inventory file.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional, Protocol

from nodefleet.models.commands import CommandLog, CommandStatus
from nodefleet.models.nodes import (
    BobNode,
    DeployStatus,
    LiteNode,
    ProcessLogs,
    ServerRecord,
    ServiceType,
)
from nodefleet.utils.logging import get_logger

log = get_logger(__name__)

RegisteredNode = LiteNode | BobNode

AUTO_SAVE_SNAPSHOT = "auto-save-snapshot"


class StoreError(RuntimeError):
    pass


class NodeStore(Protocol):
    async def find_server_by_host(self, host: str) -> Optional[ServerRecord]: ...

    async def list_servers(self, hosts: list[str] | None = None) -> list[ServerRecord]: ...

    async def list_registered_nodes(self, kind: ServiceType) -> list[RegisteredNode]: ...

    async def update_deploy_status(
        self, host: str, kind: ServiceType, status: DeployStatus,
    ) -> None: ...

    async def append_log(
        self, host: str, kind: ServiceType, stdout: str, stderr: str,
    ) -> None: ...

    async def find_node_ip_info(self, host: str) -> Optional[dict[str, Any]]: ...

    async def update_server_setup(
        self,
        host: str,
        *,
        status: DeployStatus,
        stdout: str,
        stderr: str,
        cpu: str = "",
        os: str = "",
        ram: str = "",
    ) -> None: ...

    async def update_lite_node(self, host: str, **fields: Any) -> None: ...

    async def is_automation_enabled(self, operator: str, command: str) -> bool: ...

    async def create_command_log(self, entry: CommandLog) -> None: ...

    async def append_command_output(
        self, uuid: str, *, stdout: str, stderr: str, duration: float,
    ) -> None: ...

    async def finish_command_log(
        self, uuid: str, status: CommandStatus, error_servers: list[str],
    ) -> None: ...

    async def get_command_log(self, uuid: str) -> Optional[CommandLog]: ...


class InMemoryNodeStore:
    """Dict-backed ``NodeStore``."""

    def __init__(self) -> None:
        self._servers: dict[str, ServerRecord] = {}
        self._lite: dict[str, LiteNode] = {}
        self._bob: dict[str, BobNode] = {}
        self._automations: dict[tuple[str, str], bool] = {}
        self._command_logs: dict[str, CommandLog] = {}

    # ── seeding ───────────────────────────────────────────────────────

    def add_server(self, record: ServerRecord) -> None:
        self._servers[record.server] = record

    def register_node(self, node: RegisteredNode) -> None:
        if isinstance(node, LiteNode):
            self._lite[node.server] = node
        else:
            self._bob[node.server] = node

    def remove_node(self, kind: ServiceType, host: str) -> None:
        table = self._lite if kind == ServiceType.lite_node else self._bob
        table.pop(host, None)

    def set_automation(self, operator: str, command: str, enabled: bool) -> None:
        self._automations[(operator, command)] = enabled

    @classmethod
    def from_inventory(cls, path: str | Path) -> InMemoryNodeStore:
        """Build a store from a JSON inventory file.

        Expected keys: ``servers``, ``liteNodes``, ``bobNodes`` and
        ``automations`` (``{"operator", "command", "enabled"}`` objects).
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        store = cls()
        for raw in data.get("servers", []):
            store.add_server(ServerRecord.model_validate(raw))
        for raw in data.get("liteNodes", []):
            store.register_node(LiteNode.model_validate(raw))
        for raw in data.get("bobNodes", []):
            store.register_node(BobNode.model_validate(raw))
        for raw in data.get("automations", []):
            store.set_automation(raw["operator"], raw["command"], bool(raw["enabled"]))
        log.info(
            "store.inventory_loaded",
            path=str(path),
            servers=len(store._servers),
            lite=len(store._lite),
            bob=len(store._bob),
        )
        return store

    # ── servers ───────────────────────────────────────────────────────

    def _server(self, host: str) -> ServerRecord:
        record = self._servers.get(host)
        if record is None:
            raise StoreError(f"Unknown server {host}")
        return record

    async def find_server_by_host(self, host: str) -> Optional[ServerRecord]:
        record = self._servers.get(host)
        return record.model_copy(deep=True) if record else None

    async def list_servers(self, hosts: list[str] | None = None) -> list[ServerRecord]:
        records = self._servers.values()
        if hosts is not None:
            wanted = set(hosts)
            records = [r for r in records if r.server in wanted]
        return [r.model_copy(deep=True) for r in records]

    async def update_deploy_status(
        self, host: str, kind: ServiceType, status: DeployStatus,
    ) -> None:
        self._server(host).deploy_status[kind] = status

    async def append_log(
        self, host: str, kind: ServiceType, stdout: str, stderr: str,
    ) -> None:
        self._server(host).deploy_logs[kind] = ProcessLogs(stdout=stdout, stderr=stderr)

    async def find_node_ip_info(self, host: str) -> Optional[dict[str, Any]]:
        record = self._servers.get(host)
        if record is None or not record.ip_info:
            return None
        return dict(record.ip_info)

    async def update_server_setup(
        self,
        host: str,
        *,
        status: DeployStatus,
        stdout: str,
        stderr: str,
        cpu: str = "",
        os: str = "",
        ram: str = "",
    ) -> None:
        record = self._server(host)
        record.status = status
        record.setup_logs = ProcessLogs(stdout=stdout, stderr=stderr)
        if cpu:
            record.cpu = cpu
        if os:
            record.os = os
        if ram:
            record.ram = ram

    # ── registered nodes ──────────────────────────────────────────────

    async def list_registered_nodes(self, kind: ServiceType) -> list[RegisteredNode]:
        table = self._lite if kind == ServiceType.lite_node else self._bob
        return [n.model_copy(deep=True) for n in table.values()]

    async def update_lite_node(self, host: str, **fields: Any) -> None:
        node = self._lite.get(host)
        if node is None:
            raise StoreError(f"Unknown lite node {host}")
        self._lite[host] = node.model_copy(update=fields)

    async def is_automation_enabled(self, operator: str, command: str) -> bool:
        return self._automations.get((operator, command), False)

    # ── command logs ──────────────────────────────────────────────────

    async def create_command_log(self, entry: CommandLog) -> None:
        self._command_logs[entry.uuid] = entry.model_copy(deep=True)

    async def append_command_output(
        self, uuid: str, *, stdout: str, stderr: str, duration: float,
    ) -> None:
        entry = self._command_logs.get(uuid)
        if entry is None:
            raise StoreError(f"Unknown command log {uuid}")
        entry.stdout += stdout
        entry.stderr += stderr
        entry.duration += duration

    async def finish_command_log(
        self, uuid: str, status: CommandStatus, error_servers: list[str],
    ) -> None:
        entry = self._command_logs.get(uuid)
        if entry is None:
            raise StoreError(f"Unknown command log {uuid}")
        entry.status = status
        entry.error_servers = sorted(set(entry.error_servers) | set(error_servers))

    async def get_command_log(self, uuid: str) -> Optional[CommandLog]:
        entry = self._command_logs.get(uuid)
        return entry.model_copy(deep=True) if entry else None
