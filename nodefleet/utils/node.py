"""Node-level helpers: liveness and group-id derivation."""

from __future__ import annotations

import hashlib

from nodefleet.utils.common import now_ms

# A node is active if its tick changed within this window
ACTIVE_WINDOW_MS = 2 * 60 * 1000

# Lite nodes run the full default set when no custom ids are configured
DEFAULT_ID_COUNT = 676


def is_node_active(last_tick_changed: int, now: int | None = None) -> bool:
    current = now_ms() if now is None else now
    return current - last_tick_changed < ACTIVE_WINDOW_MS


def calc_group_id_from_ids(ids: list[str]) -> str:
    """sha256 of the sorted, comma-joined ids; empty for default id sets."""
    if len(ids) == 0 or len(ids) == DEFAULT_ID_COUNT:
        return ""
    return hashlib.sha256(",".join(sorted(ids)).encode()).hexdigest()
