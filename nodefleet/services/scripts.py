"""Shell command sequences for provisioning, deploying and stopping nodes.

Everything here is pure: parameters in, ordered command list out.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Sequence

from nodefleet.models.nodes import ServiceType

LITE_SCREEN_NAME = "qubic"
BOB_SCREEN_NAME = "bob"
KEYDB_SCREEN_NAME = "keydb"

LITE_DIR = "qlite"
BOB_DIR = "qbob"
BOB_DATA_DIR = "/data/flash/db"
PEERS_FILE = "peers.txt"
BINARY_NAME_FILE = "binary_name.txt"
BOB_CONFIG_FILE = "bob_config.json"

# RAM (GB) kept back for everything that is not the keydb cache
RAM_RESERVED_LITE_GB = 40
RAM_RESERVED_BOB_GB = 6
RAM_RESERVED_SYSTEM_GB = 2
KEYDB_MIN_MEMORY_GB = 12

DEFAULT_BOB_CONFIG: dict = {
    # bob:ip:port
    "p2p-node": [],
    # BM:ip:port:0-0-0-0 where the last part is the passcode
    "trusted-node": [],
    "request-cycle-ms": 500,
    "request-logging-cycle-ms": 150,
    "future-offset": 3,
    "log-level": "info",
    "keydb-url": "tcp://127.0.0.1:6379",
    "run-server": True,
    "server-port": 21842,
    "arbitrator-identity": "AFZPUAIYVPNUYGJRQVLUKOPPVLHAZQTGLYAAUUNBXFTVTAMSBKQBLEIEPCVJ",
    "trusted-entities": [
        "QCTBOBEPDEZGBBCSOWGBYCAIZESDMEVRGLWVNBZAPBIZYEJFFZSPPIVGSCVL",
    ],
    "node-seed": "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa",
    "is-trusted-node": True,
    "tick-storage-mode": "free",
    "max-thread": 16,
    "spam-qu-threshold": 100,
}

SYSTEM_INFO_COMMANDS: dict[str, str] = {
    "cpu": "grep -m 1 \"model name\" /proc/cpuinfo | awk -F': ' '{print $2}'",
    "os": "grep '^PRETTY_NAME=' /etc/os-release | cut -d= -f2 | tr -d '\"'",
    "ram": "free -h | grep Mem | awk '{print $2}'",
}

# Archive suffix -> extraction command prefix
_UNPACK_RULES: list[tuple[tuple[str, ...], str]] = [
    ((".zip",), "unzip"),
    ((".tar.gz", ".tgz"), "tar -xvzf"),
    ((".tar.bz2", ".tbz2"), "tar -xvjf"),
    ((".tar.xz", ".txz"), "tar -xvJf"),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def filter_commands(commands: Iterable[str]) -> list[str]:
    """Drop blank lines and ``#`` comment lines."""
    return [
        cmd for cmd in commands
        if cmd and cmd.strip() and not cmd.strip().startswith("#")
    ]


def inline_bash_commands(commands: Iterable[str]) -> str:
    return " && ".join(filter_commands(commands))


def load_script(path: str | Path) -> list[str]:
    """Read a provisioning script as a flat command list.

    A missing or unreadable file yields an empty list.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError:
        return []
    return filter_commands(text.splitlines())


def basename_from_url(url: str) -> str:
    return url[url.rfind("/") + 1:]


def unzip_command_from_url(url: str) -> str:
    """Extraction command for the archive named by *url*, or ``""``."""
    filename = basename_from_url(url)
    for suffixes, prefix in _UNPACK_RULES:
        if filename.endswith(suffixes):
            return f"{prefix} {filename}"
    return ""


def keydb_memory_gb(system_ram_gb: int) -> int:
    """Cache size left after the lite node, bob node and OS reservations."""
    available = (
        system_ram_gb
        - RAM_RESERVED_LITE_GB
        - RAM_RESERVED_BOB_GB
        - RAM_RESERVED_SYSTEM_GB
    )
    return max(KEYDB_MIN_MEMORY_GB, available)


def build_bob_config(peers: Sequence[str]) -> dict:
    """Default bob config with peers split by scheme prefix."""
    cleaned = [p.strip() for p in peers if p and p.strip()]
    config = dict(DEFAULT_BOB_CONFIG)
    config["p2p-node"] = [p for p in cleaned if p.startswith("bob:")]
    config["trusted-node"] = [p for p in cleaned if p.startswith("BM:")]
    return config


def _screen_quit(pattern: str, *, tolerant: bool = False) -> str:
    suffix = " || true" if tolerant else ""
    return (
        f"for s in $(screen -ls | awk '/{pattern}/ {{print $1}}'); "
        f'do screen -S "$s" -X quit{suffix}; done'
    )


def _wait_process_gone(process: str, label: str) -> str:
    return (
        f"while pgrep -x {process} >/dev/null; "
        f'do {{ echo "Waiting for {label} to be shutdown..."; sleep 1; }}; done'
    )


def _start_keydb(memory_gb: int) -> list[str]:
    return [
        f'screen -dmS {KEYDB_SCREEN_NAME} bash -lc "keydb-server '
        f'--maxmemory {memory_gb}G --maxmemory-policy allkeys-lru"',
        'until [[ "$(keydb-cli ping 2>/dev/null)" == "PONG" ]]; '
        'do { echo "Waiting for keydb..."; sleep 1; }; done',
    ]


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def lite_node_setup(
    binary_url: str,
    epoch_file_url: str,
    peers: Sequence[str],
    is_restart: bool = False,
) -> list[str]:
    launch = [
        f"CURRENT_PEERS=$(cat {PEERS_FILE})",
        f"CURRENT_BINARY=$(cat {BINARY_NAME_FILE})",
        f'screen -dmS {LITE_SCREEN_NAME} bash -lc '
        f'"./$CURRENT_BINARY -s 32 --peers $CURRENT_PEERS"',
    ]
    if is_restart:
        return ["cd ~", f"cd {LITE_DIR}", *launch]

    binary_name = basename_from_url(binary_url)
    peers_string = ",".join(peers)
    return [
        "date",
        "cd ~",
        f"rm -rf {LITE_DIR}",
        f"mkdir -p {LITE_DIR}",
        f"cd {LITE_DIR}",
        f"wget {binary_url}",
        f"chmod +x ./{binary_name}",
        f"wget {epoch_file_url}",
        unzip_command_from_url(epoch_file_url),
        f'echo "{peers_string}" > {PEERS_FILE}',
        f'echo "{binary_name}" > {BINARY_NAME_FILE}',
        *launch,
    ]


def bob_node_setup(
    binary_url: str,
    epoch_file_url: str,
    peers: Sequence[str],
    system_ram_gb: int,
    is_restart: bool = False,
) -> list[str]:
    start = [
        f"CURRENT_BINARY=$(cat {BINARY_NAME_FILE})",
        *_start_keydb(keydb_memory_gb(system_ram_gb)),
        f'screen -dmS {BOB_SCREEN_NAME} bash -lc '
        f'"./$CURRENT_BINARY {BOB_CONFIG_FILE} || exec bash"',
    ]
    if is_restart:
        return ["cd ~", f"cd {BOB_DIR}", *start]

    binary_name = basename_from_url(binary_url)
    config_json = json.dumps(build_bob_config(peers), separators=(",", ":"))
    return [
        "date",
        "cd ~",
        f"rm -rf {BOB_DIR}",
        f"rm -rf {BOB_DATA_DIR}/*",
        f"mkdir -p {BOB_DATA_DIR}",
        f"mkdir -p {BOB_DIR}",
        f"cd {BOB_DIR}",
        f"wget {binary_url}",
        f"chmod +x ./{binary_name}",
        f"wget {epoch_file_url}",
        unzip_command_from_url(epoch_file_url),
        f"echo '{config_json}' > {BOB_CONFIG_FILE}",
        f"jq . {BOB_CONFIG_FILE} > temp_config.json && mv temp_config.json {BOB_CONFIG_FILE}",
        f'echo "{binary_name}" > {BINARY_NAME_FILE}',
        *start,
    ]


# ---------------------------------------------------------------------------
# Shutdown / restart
# ---------------------------------------------------------------------------


def shutdown_commands(kind: ServiceType, kill_cache: bool = False) -> list[str]:
    """Stop the node's screen session and wait until the process is gone."""
    if kind == ServiceType.lite_node:
        return [
            _screen_quit(LITE_SCREEN_NAME),
            f"[ -d ~/{LITE_DIR} ] && [ -f ~/{LITE_DIR}/{BINARY_NAME_FILE} ] "
            f"&& cd ~ && cd {LITE_DIR} && LITE_BINARY_NAME=$(cat {BINARY_NAME_FILE}) "
            f"&& {_wait_process_gone('$LITE_BINARY_NAME', 'litenode')}",
            'echo "Debug: LITE_BINARY_NAME=$LITE_BINARY_NAME"',
        ]
    if kind == ServiceType.bob_node:
        cache = [
            "pkill -9 keydb-server || true",
            _screen_quit(KEYDB_SCREEN_NAME, tolerant=True),
            _wait_process_gone("keydb-server", "keydb"),
        ]
        return [
            _screen_quit(BOB_SCREEN_NAME, tolerant=True),
            f"[ -d ~/{BOB_DIR} ] && [ -f ~/{BOB_DIR}/{BINARY_NAME_FILE} ] "
            f"&& cd ~ && cd {BOB_DIR} && BOB_BINARY_NAME=$(cat {BINARY_NAME_FILE}) "
            f"&& {_wait_process_gone('$BOB_BINARY_NAME', 'bobnode')}",
            *(cache if kill_cache else []),
            'echo "Debug: BOB_BINARY_NAME=$BOB_BINARY_NAME"',
        ]
    return []


def restart_commands(kind: ServiceType, system_ram_gb: int = 0) -> list[str]:
    """Shutdown (as one compound line) followed by the restart-mode setup.

    Bob restarts always tear the keydb cache down too, so the cache started
    by the setup commands never races a previous instance.
    """
    if kind == ServiceType.lite_node:
        stop = shutdown_commands(kind)
        start = lite_node_setup("", "", [], is_restart=True)
    elif kind == ServiceType.bob_node:
        stop = shutdown_commands(kind, kill_cache=True)
        start = bob_node_setup("", "", [], system_ram_gb, is_restart=True)
    else:
        return []
    return ["; ".join(stop), *start]


def setup_commands(
    kind: ServiceType,
    *,
    binary_url: str,
    epoch_file_url: str,
    peers: Sequence[str],
    system_ram_gb: int = 0,
) -> list[str]:
    """Fresh-install commands for *kind*."""
    if kind == ServiceType.lite_node:
        return lite_node_setup(binary_url, epoch_file_url, peers)
    if kind == ServiceType.bob_node:
        return bob_node_setup(binary_url, epoch_file_url, peers, system_ram_gb)
    return []
