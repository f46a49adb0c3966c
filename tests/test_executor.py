"""Tests for the remote command executor."""

from __future__ import annotations

import asyncio
import time

import pytest

from nodefleet.models.commands import SHELL_KEY, ErrorKind
from nodefleet.models.nodes import ServerCredentials
from nodefleet.services import ssh_transport
from nodefleet.services.ssh_executor import (
    SENTINEL_PREFIX,
    TIMEOUT_MESSAGE,
    RemoteExecutor,
    wrap_interactive,
)
from nodefleet.utils.common import AnsiStripper

CREDS = ServerCredentials(host="10.0.0.9", username="root", password="pw")


def test_wrap_interactive_layout():
    lines = wrap_interactive(["cd ~", "ls"], "qdone_abc")
    assert lines[:3] == ["QDONE=qdone_abc", "set -e", "exec 2>&1"]
    assert lines[3:5] == ["cd ~", "ls"]
    assert lines[-1] == f'echo "{SENTINEL_PREFIX}$QDONE"'
    # The typed line never contains the expanded marker
    assert f"{SENTINEL_PREFIX}qdone_abc" not in "\n".join(lines)


def test_credentials_unescape_private_key():
    creds = ServerCredentials(host="h", username="u", private_key="-----BEGIN-----\\nabc\\n")
    assert creds.private_key == "-----BEGIN-----\nabc\n"


@pytest.mark.asyncio
async def test_interactive_success(executor, fake_ssh):
    seen: list[str] = []
    result = await executor.execute(CREDS, ["cd ~", "ls -la"], on_data=seen.append)
    assert result.is_success is True
    assert result.error_kind is None
    assert list(result.stdouts) == [SHELL_KEY]
    assert "Welcome to Ubuntu" in result.stdouts[SHELL_KEY]
    assert any(SENTINEL_PREFIX in chunk for chunk in seen)

    script = fake_ssh.shell_scripts[0]
    assert script[0].startswith("QDONE=qdone_")
    assert script[1:3] == ["set -e", "exec 2>&1"]
    assert script[3:5] == ["cd ~", "ls -la"]
    assert script[-1].startswith("echo ")
    assert result.duration >= 0


@pytest.mark.asyncio
async def test_interactive_tokens_are_unique(executor, fake_ssh):
    await executor.execute(CREDS, ["true"])
    await executor.execute(CREDS, ["true"])
    first, second = (s[0] for s in fake_ssh.shell_scripts)
    assert first != second


@pytest.mark.asyncio
async def test_interactive_missing_sentinel_fails(executor, fake_ssh):
    fake_ssh.omit_sentinel = True
    result = await executor.execute(CREDS, ["false"])
    assert result.is_success is False
    assert result.error_kind == ErrorKind.script


@pytest.mark.asyncio
async def test_sentinel_split_across_chunks(executor, fake_ssh):
    fake_ssh.split_sentinel = True
    result = await executor.execute(CREDS, ["echo hi"])
    assert result.is_success is True


@pytest.mark.asyncio
async def test_ansi_sequences_stripped(executor, fake_ssh):
    fake_ssh.shell_output = ["\x1b[32mgreen\x1b[0m text\n"]
    result = await executor.execute(CREDS, ["ls"])
    assert "green text" in result.stdouts[SHELL_KEY]
    assert "\x1b" not in result.stdouts[SHELL_KEY]


@pytest.mark.asyncio
async def test_non_interactive_buckets_and_exit_codes(executor, fake_ssh):
    fake_ssh.exec_outputs = {"uptime": "up 3 days\n"}
    result = await executor.execute(
        CREDS, ["uptime", "hostname"], non_interactive=True,
    )
    assert result.is_success is True
    assert fake_ssh.exec_commands == ["uptime", "hostname"]
    assert result.stdouts["uptime"] == "up 3 days\n"
    assert "hostname" not in result.stdouts
    assert fake_ssh.shell_scripts == []


@pytest.mark.asyncio
async def test_non_interactive_any_nonzero_exit_fails(executor, fake_ssh):
    fake_ssh.exit_codes = {"broken": 2}
    fake_ssh.exec_errors = {"broken": "command not found\n"}
    result = await executor.execute(
        CREDS, ["true", "broken", "true"], non_interactive=True,
    )
    assert result.is_success is False
    assert result.error_kind == ErrorKind.script
    assert result.stderrs["broken"] == "command not found\n"
    # Every command still runs
    assert fake_ssh.exec_commands == ["true", "broken", "true"]


@pytest.mark.asyncio
async def test_non_interactive_sends_no_wrapper(executor, fake_ssh):
    await executor.execute(CREDS, ["uptime"], non_interactive=True)
    assert not any(c.startswith("QDONE=") or c == "set -e" for c in fake_ssh.exec_commands)


@pytest.mark.asyncio
async def test_blank_and_comment_lines_filtered(executor, fake_ssh):
    await executor.execute(
        CREDS, ["", "   ", "# comment", "  # indented", "uptime"], non_interactive=True,
    )
    assert fake_ssh.exec_commands == ["uptime"]


@pytest.mark.asyncio
async def test_empty_command_list_fails_without_connecting(executor, fake_ssh):
    result = await executor.execute(CREDS, ["", "# only a comment"])
    assert result.is_success is False
    assert result.error_kind == ErrorKind.configuration
    assert fake_ssh.connects == []


@pytest.mark.asyncio
async def test_connection_error_is_captured(executor, fake_ssh):
    fake_ssh.fail_hosts.add(CREDS.host)
    result = await executor.execute(CREDS, ["ls"])
    assert result.is_success is False
    assert result.error_kind == ErrorKind.connection
    assert "Authentication failed" in result.stderrs[SHELL_KEY]
    assert executor.is_busy(CREDS.host) is False


@pytest.mark.asyncio
async def test_timeout_appends_message_and_releases_lock(executor, fake_ssh):
    fake_ssh.gate = asyncio.Event()
    result = await executor.execute(CREDS, ["sleep 100"], timeout=0.05)
    assert result.is_success is False
    assert result.error_kind == ErrorKind.timeout
    assert TIMEOUT_MESSAGE in result.stderrs[SHELL_KEY]
    assert executor.is_busy(CREDS.host) is False
    assert fake_ssh.sessions[0].closed.is_set()


@pytest.mark.asyncio
async def test_same_host_calls_are_serialized(executor, fake_ssh):
    fake_ssh.gate = asyncio.Event()
    first = asyncio.create_task(executor.execute(CREDS, ["one"]))
    second = asyncio.create_task(executor.execute(CREDS, ["two"]))
    await asyncio.sleep(0.05)
    assert executor.is_busy(CREDS.host) is True
    assert len(fake_ssh.connects) == 1

    fake_ssh.gate.set()
    results = await asyncio.gather(first, second)
    assert all(r.is_success for r in results)
    assert fake_ssh.max_active[CREDS.host] == 1
    assert len(fake_ssh.connects) == 2
    assert executor.is_busy(CREDS.host) is False


@pytest.mark.asyncio
async def test_distinct_hosts_run_in_parallel(executor, fake_ssh):
    fake_ssh.gate = asyncio.Event()
    other = CREDS.model_copy(update={"host": "10.0.0.10"})
    tasks = [
        asyncio.create_task(executor.execute(CREDS, ["one"])),
        asyncio.create_task(executor.execute(other, ["two"])),
    ]
    await asyncio.sleep(0.05)
    assert sorted(fake_ssh.connects) == ["10.0.0.10", "10.0.0.9"]
    fake_ssh.gate.set()
    await asyncio.gather(*tasks)


@pytest.mark.asyncio
async def test_abort_ends_session_without_success(executor, fake_ssh):
    fake_ssh.gate = asyncio.Event()
    task = asyncio.create_task(executor.execute(CREDS, ["screen -r qubic -d"]))
    await asyncio.sleep(0.05)
    assert executor.abort(CREDS.host) is True
    result = await task
    assert result.is_success is False
    assert executor.is_busy(CREDS.host) is False
    assert executor.abort(CREDS.host) is False


@pytest.mark.asyncio
async def test_failing_on_data_callback_does_not_break_execution(executor):
    def boom(_chunk: str) -> None:
        raise RuntimeError("socket closed")

    result = await executor.execute(CREDS, ["ls"], on_data=boom)
    assert result.is_success is True


@pytest.mark.asyncio
async def test_release_lock_force_clears(executor):
    await executor._locks.acquire(CREDS.host)
    assert executor.is_busy(CREDS.host)
    executor.release_lock(CREDS.host)
    assert not executor.is_busy(CREDS.host)


@pytest.mark.asyncio
async def test_cancelled_queued_call_leaves_lock_holder_alone(executor, fake_ssh):
    fake_ssh.gate = asyncio.Event()
    deploy = asyncio.create_task(executor.execute(CREDS, ["deploy"]))
    await asyncio.sleep(0.05)
    tail = asyncio.create_task(executor.execute(CREDS, ["screen -r qubic -d"]))
    await asyncio.sleep(0.05)

    tail.cancel()
    await asyncio.gather(tail, return_exceptions=True)
    assert fake_ssh.sessions[0].closed.is_set() is False

    fake_ssh.gate.set()
    result = await deploy
    assert result.is_success is True
    assert len(fake_ssh.connects) == 1
    assert executor.is_busy(CREDS.host) is False


@pytest.mark.asyncio
async def test_abort_while_connecting_closes_session_once_up(executor, fake_ssh):
    fake_ssh.connect_gate = asyncio.Event()
    task = asyncio.create_task(executor.execute(CREDS, ["screen -r qubic -d"]))
    await asyncio.sleep(0.05)
    assert executor.abort(CREDS.host) is True

    fake_ssh.connect_gate.set()
    result = await asyncio.wait_for(task, timeout=1)
    assert result.is_success is False
    assert "aborted" in result.stderrs[SHELL_KEY]
    assert fake_ssh.sessions[0].closed.is_set()
    assert fake_ssh.shell_scripts == []
    assert executor.is_busy(CREDS.host) is False


@pytest.mark.asyncio
async def test_cancel_while_connecting_releases_lock(executor, fake_ssh):
    fake_ssh.connect_gate = asyncio.Event()
    task = asyncio.create_task(executor.execute(CREDS, ["ls"]))
    await asyncio.sleep(0.05)
    assert executor.is_busy(CREDS.host) is True

    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
    assert executor.is_busy(CREDS.host) is False
    assert executor.abort(CREDS.host) is False


@pytest.mark.asyncio
async def test_timeout_while_connecting_closes_late_client(monkeypatch, test_settings):
    closed: list[str] = []

    class LateClient:
        def close(self):
            closed.append("closed")

    def slow_connect(creds, cfg):
        time.sleep(0.3)
        return LateClient()

    monkeypatch.setattr(ssh_transport, "_connect_sync", slow_connect)
    transport = ssh_transport.ParamikoTransport(test_settings)
    executor = RemoteExecutor(transport, test_settings)
    try:
        result = await executor.execute(CREDS, ["ls"], timeout=0.05)
        assert result.error_kind == ErrorKind.timeout
        assert executor.is_busy(CREDS.host) is False

        deadline = time.monotonic() + 2
        while not closed and time.monotonic() < deadline:
            await asyncio.sleep(0.02)
        assert closed == ["closed"]
    finally:
        transport.shutdown()


@pytest.mark.asyncio
async def test_escape_sequence_split_across_chunks(executor, fake_ssh):
    fake_ssh.shell_output = ["\x1b[3", "2mgreen\x1b[0m text\n"]
    result = await executor.execute(CREDS, ["ls"])
    out = result.stdouts[SHELL_KEY]
    assert "green text" in out
    assert "\x1b" not in out
    assert "2mgreen" not in out


def test_ansi_stripper_holds_back_partial_sequence():
    stripper = AnsiStripper()
    assert stripper.feed("abc\x1b") == "abc"
    assert stripper.feed("[1;31mred") == "red"
    assert stripper.feed("\x1b]0;title") == ""
    assert stripper.feed("\x07done") == "done"
    assert stripper.feed("plain") == "plain"
