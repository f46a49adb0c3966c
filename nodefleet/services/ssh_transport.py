"""Paramiko-backed SSH transport used by the remote executor.

Paramiko is blocking, so every network call runs on a thread pool via
``loop.run_in_executor`` and output chunks are handed back to the event
loop with ``call_soon_threadsafe``.  The executor only depends on the
``SSHTransport`` / ``SSHSession`` shape, which lets tests plug in a fake.
"""

from __future__ import annotations

import asyncio
import codecs
import io
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Protocol

import paramiko

from nodefleet.config import Settings, settings
from nodefleet.models.nodes import ServerCredentials
from nodefleet.utils.logging import get_logger

log = get_logger(__name__)

# (text, is_stderr)
OutputCallback = Callable[[str, bool], None]

_READ_SIZE = 65535
_IDLE_SLEEP = 0.05


class SSHSession(Protocol):
    async def run_shell(self, lines: list[str], on_output: OutputCallback) -> None:
        """Feed *lines* to a PTY login shell; return when the channel closes."""

    async def run_exec(self, command: str, on_output: OutputCallback) -> int:
        """Run *command* on its own exec channel and return its exit code."""

    def close(self) -> None:
        """Tear the connection down; safe to call from any thread, repeatedly."""


class SSHTransport(Protocol):
    async def connect(self, creds: ServerCredentials) -> SSHSession: ...


# ── paramiko implementation ───────────────────────────────────────────────


class ParamikoSession:
    def __init__(self, client: paramiko.SSHClient, transport: ParamikoTransport) -> None:
        self._client = client
        self._transport = transport
        self._closed = False

    def _threadsafe(self, on_output: OutputCallback) -> OutputCallback:
        loop = asyncio.get_running_loop()

        def emit(text: str, is_stderr: bool) -> None:
            loop.call_soon_threadsafe(on_output, text, is_stderr)

        return emit

    async def run_shell(self, lines: list[str], on_output: OutputCallback) -> None:
        await self._transport._run(
            _shell_sync,
            self._client,
            lines,
            self._transport.shell_width,
            self._threadsafe(on_output),
        )

    async def run_exec(self, command: str, on_output: OutputCallback) -> int:
        return await self._transport._run(
            _exec_sync, self._client, command, self._threadsafe(on_output),
        )

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._client.close()
        except Exception as exc:
            log.debug("ssh.close_failed", error=str(exc))


class ParamikoTransport:
    """Opens one paramiko client per executor call."""

    def __init__(self, cfg: Settings | None = None) -> None:
        self._cfg = cfg or settings
        self._executor = ThreadPoolExecutor(
            max_workers=self._cfg.ssh_max_workers, thread_name_prefix="ssh",
        )

    @property
    def shell_width(self) -> int:
        return self._cfg.ssh_shell_width

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def connect(self, creds: ServerCredentials) -> ParamikoSession:
        loop = asyncio.get_running_loop()
        pending = loop.run_in_executor(self._executor, _connect_sync, creds, self._cfg)
        try:
            client = await asyncio.shield(pending)
        except asyncio.CancelledError:
            # The worker thread keeps connecting; close whatever it returns
            pending.add_done_callback(_close_abandoned_client)
            raise
        return ParamikoSession(client, self)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


# ── module-level sync helpers (run on the thread pool) ────────────────────


def load_private_key(text: str) -> paramiko.PKey:
    """Parse an OpenSSH/PEM private key of any supported type."""
    for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_cls.from_private_key(io.StringIO(text))
        except paramiko.SSHException:
            continue
    raise paramiko.SSHException("Unsupported or invalid private key")


def _close_abandoned_client(fut: asyncio.Future) -> None:
    if fut.cancelled() or fut.exception() is not None:
        return
    log.info("ssh.close_abandoned")
    try:
        fut.result().close()
    except Exception as exc:
        log.debug("ssh.close_failed", error=str(exc))


def _connect_sync(creds: ServerCredentials, cfg: Settings) -> paramiko.SSHClient:
    pkey: Optional[paramiko.PKey] = None
    if creds.private_key.strip():
        pkey = load_private_key(creds.private_key)

    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(
            hostname=creds.host,
            port=creds.port or cfg.ssh_default_port,
            username=creds.username,
            password=None if pkey else (creds.password or None),
            pkey=pkey,
            timeout=cfg.ssh_connect_timeout_seconds,
            banner_timeout=cfg.ssh_banner_timeout_seconds,
            auth_timeout=cfg.ssh_auth_timeout_seconds,
            allow_agent=False,
            look_for_keys=False,
        )
    except Exception:
        client.close()
        raise
    return client


def _shell_sync(
    client: paramiko.SSHClient,
    lines: list[str],
    width: int,
    emit: OutputCallback,
) -> None:
    chan = client.invoke_shell(width=width, width_pixels=width * 8)
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        for line in lines:
            chan.sendall((line + "\n").encode())
        chan.sendall(b"exit\n")
        while True:
            try:
                data = chan.recv(_READ_SIZE)
            except (OSError, EOFError):
                break
            if not data:
                break
            text = decoder.decode(data)
            if text:
                emit(text, False)
        tail = decoder.decode(b"", final=True)
        if tail:
            emit(tail, False)
    finally:
        chan.close()


def _exec_sync(client: paramiko.SSHClient, command: str, emit: OutputCallback) -> int:
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise paramiko.SSHException("SSH connection is not active")

    chan = transport.open_session()
    out_dec = codecs.getincrementaldecoder("utf-8")(errors="replace")
    err_dec = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        chan.exec_command(command)
        while True:
            progressed = False
            if chan.recv_ready():
                emit(out_dec.decode(chan.recv(_READ_SIZE)), False)
                progressed = True
            if chan.recv_stderr_ready():
                emit(err_dec.decode(chan.recv_stderr(_READ_SIZE)), True)
                progressed = True
            if (
                chan.exit_status_ready()
                and not chan.recv_ready()
                and not chan.recv_stderr_ready()
            ):
                break
            if not progressed:
                time.sleep(_IDLE_SLEEP)
        return chan.recv_exit_status()
    finally:
        chan.close()
