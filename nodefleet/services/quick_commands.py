"""Shortcut commands an operator can fan out by name.

Commands arrive as ``key`` or ``key::param1,param2``; a known key is turned
into its command list, anything else runs verbatim.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable

from nodefleet.services.scripts import (
    BOB_DIR,
    KEYDB_SCREEN_NAME,
    LITE_SCREEN_NAME,
)

PARAMS_SEPARATOR = "::"


class QuickCommand(str, Enum):
    esc_shutdown_lite = "esc/shutdown:lite"
    save_snapshot_lite = "f8/savesnapshot:lite"
    clear_memory_lite = "f10/clearmemory:lite"
    place_binary_bob = "placebinary:bob"
    restart_keydb_bob = "restartkeydb:bob"


def _send_keys(keys: str) -> list[str]:
    return [f"screen -S {LITE_SCREEN_NAME} -X stuff $'{keys}'"]


def save_snapshot_commands() -> list[str]:
    """F8 in the lite node console."""
    return _send_keys("\\x1b[19~")


def _place_binary(url: str = "", *_rest: str) -> list[str]:
    if not url or not url.startswith("http"):
        raise ValueError("Invalid URL for binary")
    return [
        f"cd ~/{BOB_DIR}/",
        "rm -rf bob",
        f"wget {url}",
        f"chmod +x $(basename {url})",
    ]


def _restart_keydb(*_params: str) -> list[str]:
    return [
        "while pgrep -x keydb-server >/dev/null; do { echo \"Waiting for keydb to be "
        "shutdown...\"; sleep 1; pkill -2 keydb-server || true; }; done",
        f"for s in $(screen -ls | awk '/{KEYDB_SCREEN_NAME}/ {{print $1}}'); "
        'do screen -S "$s" -X quit || true; done',
        f'screen -dmS {KEYDB_SCREEN_NAME} bash -lc '
        '"keydb-server /etc/keydb-runtime.conf || exec bash"',
        'until [[ "$(keydb-cli ping 2>/dev/null)" == "PONG" ]]; '
        'do { echo "Waiting for keydb..."; sleep 1; }; done',
    ]


_BUILDERS: dict[QuickCommand, Callable[..., list[str]]] = {
    QuickCommand.esc_shutdown_lite: lambda *_p: _send_keys("\\x1b"),
    QuickCommand.save_snapshot_lite: lambda *_p: save_snapshot_commands(),
    QuickCommand.clear_memory_lite: lambda *_p: _send_keys("\\x1b[21~"),
    QuickCommand.place_binary_bob: _place_binary,
    QuickCommand.restart_keydb_bob: _restart_keydb,
}


def parse_command(text: str) -> tuple[QuickCommand | None, list[str]]:
    """Split *text* into a known shortcut and its parameters."""
    key, _, raw_params = text.strip().partition(PARAMS_SEPARATOR)
    try:
        quick = QuickCommand(key)
    except ValueError:
        return None, []
    params = [p for p in raw_params.split(",") if p] if raw_params else []
    return quick, params


def resolve_command(text: str) -> list[str]:
    """Commands to run for *text*.

    Raises ``ValueError`` when a shortcut's parameters are invalid.
    """
    quick, params = parse_command(text)
    if quick is None:
        return [text]
    return _BUILDERS[quick](*params)
