"""Remote command executor.

One SSH connection per call, one in-flight call per host.  Two modes:

* interactive (default): every command goes through a single PTY login
  shell so ``cd`` and environment changes carry over.  The script is wrapped
  with a per-call sentinel; the run only counts as successful when the
  expanded sentinel shows up in the output before the shell closes.
* non-interactive: one exec channel per command, run in order, each exit
  code recorded; success is every exit code being zero.

Nothing raises out of :meth:`RemoteExecutor.execute`; failures land in the
result's ``"shell"`` stderr bucket.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional, Sequence
from uuid import uuid4

from nodefleet.config import Settings, settings
from nodefleet.models.commands import SHELL_KEY, ErrorKind, ExecutionResult
from nodefleet.models.nodes import ServerCredentials
from nodefleet.services.host_lock import HostLockTable
from nodefleet.services.scripts import filter_commands
from nodefleet.services.ssh_transport import (
    ParamikoTransport,
    SSHSession,
    SSHTransport,
)
from nodefleet.utils.common import AnsiStripper
from nodefleet.utils.logging import get_logger

log = get_logger(__name__)

SENTINEL_PREFIX = "GETHERE@"
TIMEOUT_MESSAGE = "SSH command timeout"


class ExecutionAborted(RuntimeError):
    """Raised inside a call whose session was aborted before it started."""


class _Call:
    """Session slot of one ``execute`` call.

    Registered under the host while the call holds the host lock, so an
    abort only ever reaches the call that owns the host right now.
    """

    __slots__ = ("session", "aborted")

    def __init__(self) -> None:
        self.session: SSHSession | None = None
        self.aborted = False

    def abort(self) -> None:
        self.aborted = True
        if self.session is not None:
            self.session.close()


def wrap_interactive(commands: Sequence[str], token: str) -> list[str]:
    """Surround *commands* with the sentinel protocol.

    The trailing ``echo`` references ``$QDONE`` so the PTY echo of the typed
    line never contains the expanded marker; only a shell that actually
    reached the last line prints it.
    """
    return [
        f"QDONE={token}",
        "set -e",
        "exec 2>&1",
        *commands,
        f'echo "{SENTINEL_PREFIX}$QDONE"',
    ]


class RemoteExecutor:
    """Runs command sequences on remote hosts over SSH."""

    def __init__(
        self,
        transport: SSHTransport | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self._cfg = cfg or settings
        self._transport: SSHTransport = transport or ParamikoTransport(self._cfg)
        self._locks = HostLockTable(self._cfg.ssh_lock_poll_interval_seconds)
        self._live: dict[str, _Call] = {}

    # ── lock / session hooks for the route layer ──────────────────────

    def is_busy(self, host: str) -> bool:
        return self._locks.is_locked(host)

    def abort(self, host: str) -> bool:
        """Abort the call that currently holds the lock on *host*, if any.

        Calls still waiting for the lock are not affected.  A call caught
        while connecting closes its session as soon as the connection is up.
        The aborted call finishes as a failure and releases the lock itself.
        """
        call = self._live.get(host)
        if call is None or call.aborted:
            return False
        log.info("ssh.abort", host=host)
        call.abort()
        return True

    def release_lock(self, host: str) -> None:
        self._locks.release(host)

    def close(self) -> None:
        for call in list(self._live.values()):
            call.abort()
        shutdown = getattr(self._transport, "shutdown", None)
        if shutdown is not None:
            shutdown()

    # ── public: execute ───────────────────────────────────────────────

    async def execute(
        self,
        creds: ServerCredentials,
        commands: Sequence[str],
        timeout: float = 0,
        *,
        on_data: Optional[Callable[[str], None]] = None,
        non_interactive: bool = False,
    ) -> ExecutionResult:
        """Run *commands* on ``creds.host``.

        *timeout* is in seconds, ``0`` disables it.  *on_data* receives every
        ANSI-stripped stdout chunk as it arrives.

        Cancelling the awaiting task is the way for a caller to drop its own
        call: the lock is never taken if it is still waiting, otherwise the
        session is closed and the lock released on the way out.
        """
        started = time.monotonic()
        cmds = filter_commands(commands)
        if not cmds:
            return ExecutionResult.failure(
                "No commands to execute", ErrorKind.configuration,
            )

        host = creds.host
        result = ExecutionResult()
        await self._locks.acquire(host)
        call = _Call()
        self._live[host] = call
        try:
            log.info(
                "ssh.connecting",
                host=host,
                username=creds.username,
                commands=len(cmds),
                interactive=not non_interactive,
            )
            run = self._run_session(call, creds, cmds, result, on_data, non_interactive)
            if timeout and timeout > 0:
                try:
                    await asyncio.wait_for(run, timeout=timeout)
                except asyncio.TimeoutError:
                    log.error("ssh.timeout", host=host, timeout=timeout)
                    result.is_success = False
                    result.error_kind = ErrorKind.timeout
                    result.add_stderr(SHELL_KEY, TIMEOUT_MESSAGE)
            else:
                await run
        except ExecutionAborted as exc:
            log.warning("ssh.aborted", host=host, username=creds.username)
            result.is_success = False
            result.error_kind = ErrorKind.script
            result.add_stderr(SHELL_KEY, str(exc))
        except Exception as exc:
            log.error("ssh.failed", host=host, username=creds.username, error=str(exc))
            result.is_success = False
            result.error_kind = result.error_kind or ErrorKind.connection
            result.add_stderr(SHELL_KEY, str(exc) or exc.__class__.__name__)
        finally:
            if self._live.get(host) is call:
                del self._live[host]
            if call.session is not None:
                call.session.close()
            self._locks.release(host)
            result.duration = time.monotonic() - started

        log.info(
            "ssh.done",
            host=host,
            username=creds.username,
            success=result.is_success,
            duration=round(result.duration, 2),
        )
        return result

    # ── internals ─────────────────────────────────────────────────────

    async def _run_session(
        self,
        call: _Call,
        creds: ServerCredentials,
        cmds: list[str],
        result: ExecutionResult,
        on_data: Optional[Callable[[str], None]],
        non_interactive: bool,
    ) -> None:
        if call.aborted:
            raise ExecutionAborted("SSH session aborted")
        session = await self._transport.connect(creds)
        call.session = session
        if call.aborted:
            raise ExecutionAborted("SSH session aborted")
        log.info("ssh.ready", host=creds.host, username=creds.username)

        def handle(key: str) -> Callable[[str, bool], None]:
            out_ansi = AnsiStripper()
            err_ansi = AnsiStripper()

            def on_output(raw: str, is_stderr: bool) -> None:
                text = (err_ansi if is_stderr else out_ansi).feed(raw)
                if not text:
                    return
                if is_stderr:
                    log.error("ssh.error_output", host=creds.host, output=text)
                    result.add_stderr(key, text)
                    return
                log.info("ssh.output", host=creds.host, output=text)
                result.add_stdout(key, text)
                if on_data is not None:
                    try:
                        on_data(text)
                    except Exception as exc:
                        log.warning("ssh.on_data_failed", host=creds.host, error=str(exc))

            return on_output

        if non_interactive:
            await self._run_exec_batch(session, cmds, result, handle)
        else:
            await self._run_interactive(session, cmds, result, handle)

    async def _run_interactive(self, session, cmds, result, handle) -> None:
        token = f"qdone_{uuid4().hex}"
        marker = f"{SENTINEL_PREFIX}{token}"
        await session.run_shell(wrap_interactive(cmds, token), handle(SHELL_KEY))
        # Let callbacks scheduled from the reader thread land first
        await asyncio.sleep(0)
        # Check the cumulative output: the marker may straddle two reads
        result.is_success = marker in result.stdouts.get(SHELL_KEY, "")
        if not result.is_success:
            result.error_kind = ErrorKind.script

    async def _run_exec_batch(self, session, cmds, result, handle) -> None:
        all_ok = True
        for cmd in cmds:
            code = await session.run_exec(cmd, handle(cmd))
            log.debug("ssh.exit_code", command=cmd, code=code)
            if code != 0:
                all_ok = False
        await asyncio.sleep(0)
        result.is_success = all_ok
        if not all_ok:
            result.error_kind = ErrorKind.script
