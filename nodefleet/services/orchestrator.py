"""Node lifecycle orchestration: setup -> deploy -> shutdown / restart.

Per (server, service) the deploy status moves

    setting_up -> active | error
    active -> restarting -> active | error
    active | error -> stopped

and any failure lands in ``error``.  Store writes are best-effort: the
remote outcome is what the caller gets back, a failed write is only logged.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Coroutine, Iterable, Literal, Sequence

from nodefleet.config import Settings, settings
from nodefleet.models.commands import (
    SHELL_KEY,
    CommandLog,
    CommandStatus,
    DeployParams,
    ErrorKind,
    ExecutionResult,
    SetupResult,
)
from nodefleet.models.nodes import (
    DeployStatus,
    ServerCredentials,
    ServerRecord,
    ServiceType,
)
from nodefleet.services import scripts
from nodefleet.services.quick_commands import resolve_command
from nodefleet.services.ssh_executor import RemoteExecutor
from nodefleet.services.store import NodeStore
from nodefleet.utils.logging import get_logger

log = get_logger(__name__)

StandardAction = Literal["shutdown", "restart"]

CUSTOM_COMMAND_TIMEOUT = 30.0


def _section(title: str, body: str) -> str:
    return f"\n---------- {title} ----------- \n\n{body}"


def format_deploy_log(result: ExecutionResult) -> str:
    return (
        f"---------- Time elapsed {result.duration:.2f} seconds ----------- \n\n"
        + result.stdout_text
    )


class NodeOrchestrator:
    """Composes the script builder and the executor; records outcomes."""

    def __init__(
        self,
        executor: RemoteExecutor,
        store: NodeStore,
        cfg: Settings | None = None,
    ) -> None:
        self._executor = executor
        self._store = store
        self._cfg = cfg or settings
        self._deploying: set[tuple[str, ServiceType]] = set()
        self._tasks: set[asyncio.Task] = set()

    # ── helpers ───────────────────────────────────────────────────────

    async def _persist(self, what: str, op: Awaitable[object]) -> None:
        try:
            await op
        except Exception as exc:
            log.error("orchestrator.persist_failed", what=what, error=str(exc))

    async def _set_status(
        self, host: str, kind: ServiceType, status: DeployStatus,
    ) -> None:
        await self._persist(
            f"deploy_status:{kind.value}",
            self._store.update_deploy_status(host, kind, status),
        )

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """Run *coro* in the background, keeping a reference until it ends."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every background task started through :meth:`spawn`."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def is_deploying(self, host: str, kind: ServiceType) -> bool:
        return (host, kind) in self._deploying

    # ── setup ─────────────────────────────────────────────────────────

    async def setup_node(self, creds: ServerCredentials) -> SetupResult:
        """Install OS packages and collect CPU / OS / RAM facts."""
        commands = scripts.load_script(self._cfg.setup_script_path)
        if not commands:
            log.error("setup.no_script", path=self._cfg.setup_script_path)
            return SetupResult(
                stderrs={SHELL_KEY: "Provisioning script is missing or empty"},
                error_kind=ErrorKind.configuration,
            )

        log.info("setup.started", host=creds.host, commands=len(commands))
        # Exec channels have no stdin, so a package-manager prompt cannot hang
        result = await self._executor.execute(
            creds,
            [scripts.inline_bash_commands(commands)],
            non_interactive=True,
        )
        # Separate batch so each fact maps back to its own command
        info = await self._executor.execute(
            creds,
            list(scripts.SYSTEM_INFO_COMMANDS.values()),
            non_interactive=True,
        )
        facts = {
            name: info.stdouts.get(cmd, "").replace("\n", "").strip()
            for name, cmd in scripts.SYSTEM_INFO_COMMANDS.items()
        }
        setup = SetupResult(
            stdouts=result.stdouts,
            stderrs=result.stderrs,
            is_success=result.is_success,
            duration=result.duration + info.duration,
            error_kind=result.error_kind,
            **facts,
        )
        await self._persist(
            "server_setup",
            self._store.update_server_setup(
                creds.host,
                status=DeployStatus.active if setup.is_success else DeployStatus.error,
                stdout=setup.stdout_text,
                stderr=setup.stderr_text,
                **facts,
            ),
        )
        log.info("setup.done", host=creds.host, success=setup.is_success, **facts)
        return setup

    # ── deploy ────────────────────────────────────────────────────────

    async def deploy_node(
        self,
        creds: ServerCredentials,
        kind: ServiceType,
        params: DeployParams,
    ) -> ExecutionResult:
        """Stop whatever runs, then fresh-install and launch *kind*."""
        host = creds.host
        key = (host, kind)
        if key in self._deploying:
            log.warning("deploy.already_in_progress", host=host, kind=kind.value)
            return ExecutionResult.failure(
                f"Deploy of {kind.value} already in progress on {host}",
                ErrorKind.busy,
            )

        # One shell for the whole pipeline: later steps rely on earlier `cd`s
        commands = [
            *scripts.shutdown_commands(kind, kill_cache=True),
            *scripts.setup_commands(
                kind,
                binary_url=params.binary_url,
                epoch_file_url=params.epoch_file_url,
                peers=params.peers,
                system_ram_gb=params.system_ram_gb,
            ),
        ]

        self._deploying.add(key)
        try:
            try:
                server = await self._store.find_server_by_host(host)
            except Exception as exc:
                log.error("deploy.lookup_failed", host=host, error=str(exc))
                await self._set_status(host, kind, DeployStatus.error)
                return ExecutionResult.failure(
                    f"Server lookup failed: {exc}", ErrorKind.configuration,
                )
            if server is None:
                log.error("deploy.unknown_server", host=host)
                return ExecutionResult.failure(
                    f"Server {host} is not registered", ErrorKind.configuration,
                )

            await self._set_status(host, kind, DeployStatus.setting_up)
            log.info("deploy.started", host=host, kind=kind.value, commands=len(commands))
            result = await self._executor.execute(creds, commands)
            await self._record(host, kind, result, DeployStatus.active)

            if (
                result.is_success
                and kind == ServiceType.lite_node
                and params.logging_passcode
            ):
                await self._persist(
                    "lite_passcode",
                    self._store.update_lite_node(host, passcode=params.logging_passcode),
                )
            log.info("deploy.done", host=host, kind=kind.value, success=result.is_success)
            return result
        except Exception as exc:
            log.error("deploy.failed", host=host, kind=kind.value, error=str(exc))
            await self._set_status(host, kind, DeployStatus.error)
            return ExecutionResult.failure(str(exc))
        finally:
            self._deploying.discard(key)

    async def _record(
        self,
        host: str,
        kind: ServiceType,
        result: ExecutionResult,
        ok_status: DeployStatus,
    ) -> None:
        status = ok_status if result.is_success else DeployStatus.error
        await self._set_status(host, kind, status)
        await self._persist(
            f"deploy_log:{kind.value}",
            self._store.append_log(
                host, kind, format_deploy_log(result), result.stderr_text,
            ),
        )

    # ── shutdown / restart ────────────────────────────────────────────

    async def shutdown_node(
        self, creds: ServerCredentials, kind: ServiceType,
    ) -> ExecutionResult:
        commands = scripts.shutdown_commands(kind)
        if not commands:
            return ExecutionResult.failure(
                f"Unsupported service {kind}", ErrorKind.configuration,
            )
        try:
            result = await self._executor.execute(
                creds, ["; ".join(commands)], non_interactive=True,
            )
        except Exception as exc:
            log.error("shutdown.failed", host=creds.host, error=str(exc))
            result = ExecutionResult.failure(str(exc))
        await self._set_status(
            creds.host,
            kind,
            DeployStatus.stopped if result.is_success else DeployStatus.error,
        )
        log.info("shutdown.done", host=creds.host, kind=kind.value, success=result.is_success)
        return result

    async def restart_node(
        self,
        creds: ServerCredentials,
        kind: ServiceType,
        system_ram_gb: int = 0,
    ) -> ExecutionResult:
        commands = scripts.restart_commands(kind, system_ram_gb)
        if not commands:
            return ExecutionResult.failure(
                f"Unsupported service {kind}", ErrorKind.configuration,
            )
        await self._set_status(creds.host, kind, DeployStatus.restarting)
        try:
            result = await self._executor.execute(creds, commands)
        except Exception as exc:
            log.error("restart.failed", host=creds.host, error=str(exc))
            result = ExecutionResult.failure(str(exc))
        await self._set_status(
            creds.host,
            kind,
            DeployStatus.active if result.is_success else DeployStatus.error,
        )
        log.info("restart.done", host=creds.host, kind=kind.value, success=result.is_success)
        return result

    # ── fan-out commands with a command log ───────────────────────────

    async def _open_log(
        self,
        operator: str,
        command: str,
        servers: Sequence[ServerRecord],
        *,
        standard: bool,
    ) -> CommandLog:
        entry = CommandLog(
            operator=operator,
            servers=[s.server for s in servers],
            command=command,
            is_standard_command=standard,
        )
        await self._persist("command_log", self._store.create_command_log(entry))
        return entry

    async def _append(self, entry: CommandLog, stdout: str, stderr: str, duration: float) -> None:
        entry.stdout += stdout
        entry.stderr += stderr
        entry.duration += duration
        await self._persist(
            "command_output",
            self._store.append_command_output(
                entry.uuid, stdout=stdout, stderr=stderr, duration=duration,
            ),
        )

    async def _close_log(self, entry: CommandLog, failed: Iterable[str]) -> None:
        failed = sorted(set(failed))
        entry.status = CommandStatus.failed if failed else CommandStatus.completed
        entry.error_servers = failed
        await self._persist(
            "command_status",
            self._store.finish_command_log(entry.uuid, entry.status, failed),
        )
        log.info(
            "command.finished",
            uuid=entry.uuid,
            status=entry.status.value,
            failed=len(failed),
        )

    async def submit_custom_command(
        self,
        operator: str,
        command: str,
        servers: Sequence[ServerRecord],
        timeout: float = CUSTOM_COMMAND_TIMEOUT,
    ) -> CommandLog:
        """Open the command log and run the command in the background.

        Raises ``ValueError`` for a shortcut with invalid parameters, before
        anything is logged or executed.
        """
        commands = resolve_command(command)
        entry = await self._open_log(operator, command, servers, standard=False)
        self.spawn(self._fan_out_custom(entry, commands, servers, timeout))
        return entry

    async def run_custom_command(
        self,
        operator: str,
        command: str,
        servers: Sequence[ServerRecord],
        timeout: float = CUSTOM_COMMAND_TIMEOUT,
    ) -> CommandLog:
        commands = resolve_command(command)
        entry = await self._open_log(operator, command, servers, standard=False)
        await self._fan_out_custom(entry, commands, servers, timeout)
        return entry

    async def _fan_out_custom(
        self,
        entry: CommandLog,
        commands: list[str],
        servers: Sequence[ServerRecord],
        timeout: float,
    ) -> None:
        failed: list[str] = []

        async def one(server: ServerRecord) -> None:
            result = await self._executor.execute(
                server.credentials(), commands, timeout,
            )
            secs = f"{result.duration:.2f}"
            await self._append(
                entry,
                _section(f"Command output for {server.server} ({secs}s)", result.stdout_text),
                _section(f"Command error for {server.server} ({secs}s)", result.stderr_text),
                result.duration,
            )
            if not result.is_success:
                failed.append(server.server)

        outcomes = await asyncio.gather(*(one(s) for s in servers), return_exceptions=True)
        for server, outcome in zip(servers, outcomes):
            if isinstance(outcome, Exception):
                log.error("command.server_failed", host=server.server, error=str(outcome))
                failed.append(server.server)
        await self._close_log(entry, failed)

    async def submit_standard_command(
        self,
        operator: str,
        action: StandardAction,
        services: Sequence[ServiceType],
        servers: Sequence[ServerRecord],
    ) -> CommandLog:
        entry = await self._open_log(
            operator, self._standard_label(action, services), servers, standard=True,
        )
        self.spawn(self._fan_out_standard(entry, action, services, servers))
        return entry

    async def run_standard_command(
        self,
        operator: str,
        action: StandardAction,
        services: Sequence[ServiceType],
        servers: Sequence[ServerRecord],
    ) -> CommandLog:
        entry = await self._open_log(
            operator, self._standard_label(action, services), servers, standard=True,
        )
        await self._fan_out_standard(entry, action, services, servers)
        return entry

    @staticmethod
    def _standard_label(action: str, services: Sequence[ServiceType]) -> str:
        return f"{action}:{', '.join(s.value for s in services)}".lower()

    async def _fan_out_standard(
        self,
        entry: CommandLog,
        action: StandardAction,
        services: Sequence[ServiceType],
        servers: Sequence[ServerRecord],
    ) -> None:
        failed: list[str] = []
        title = "Shutdown" if action == "shutdown" else "Restart"

        async def one(server: ServerRecord, kind: ServiceType) -> None:
            creds = server.credentials()
            if action == "shutdown":
                result = await self.shutdown_node(creds, kind)
            else:
                result = await self.restart_node(creds, kind, server.ram_gb)
            body = "Okay\n" if result.is_success else result.stdout_text
            await self._append(
                entry,
                _section(f"{title} log for {kind.value} on {server.server}", body),
                result.stderr_text,
                result.duration,
            )
            if not result.is_success:
                failed.append(server.server)

        jobs = [
            one(server, kind)
            for kind in services
            for server in servers
            if kind in server.services
        ]
        outcomes = await asyncio.gather(*jobs, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                log.error("command.job_failed", error=str(outcome))
        await self._close_log(entry, failed)
