"""Tests for shortcut command resolution."""

from __future__ import annotations

import pytest

from nodefleet.services.quick_commands import (
    QuickCommand,
    parse_command,
    resolve_command,
    save_snapshot_commands,
)


def test_unknown_command_runs_verbatim():
    assert resolve_command("df -h") == ["df -h"]
    assert parse_command("df -h") == (None, [])


def test_parse_with_params():
    quick, params = parse_command("placebinary:bob::https://x.io/bob,extra")
    assert quick == QuickCommand.place_binary_bob
    assert params == ["https://x.io/bob", "extra"]


def test_save_snapshot_keystroke():
    assert save_snapshot_commands() == ["screen -S qubic -X stuff $'\\x1b[19~'"]
    assert resolve_command("f8/savesnapshot:lite") == save_snapshot_commands()


def test_esc_and_clear_memory_keystrokes():
    assert resolve_command("esc/shutdown:lite") == ["screen -S qubic -X stuff $'\\x1b'"]
    assert resolve_command("f10/clearmemory:lite") == ["screen -S qubic -X stuff $'\\x1b[21~'"]


def test_place_binary_requires_http_url():
    cmds = resolve_command("placebinary:bob::https://x.io/bob-v2")
    assert "wget https://x.io/bob-v2" in cmds
    assert cmds[0] == "cd ~/qbob/"
    with pytest.raises(ValueError):
        resolve_command("placebinary:bob::ftp://x.io/bob")
    with pytest.raises(ValueError):
        resolve_command("placebinary:bob")


def test_restart_keydb():
    cmds = resolve_command("restartkeydb:bob")
    assert any("pkill -2 keydb-server" in c for c in cmds)
    assert any(c.startswith("screen -dmS keydb") for c in cmds)
