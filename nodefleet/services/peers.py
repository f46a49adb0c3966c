"""Random peer selection among currently active nodes."""

from __future__ import annotations

import random
from typing import Callable, Optional, Sequence, TypeVar

from nodefleet.models.nodes import BobNode, LiteNode
from nodefleet.services.poller import StatusPoller
from nodefleet.utils.node import is_node_active

T = TypeVar("T")


def select_random(
    candidates: Sequence[T],
    n: int,
    is_eligible: Optional[Callable[[T], bool]] = None,
    rng: Optional[random.Random] = None,
) -> list[T]:
    """Up to *n* distinct eligible candidates, uniformly at random.

    When no more than *n* candidates are eligible, all of them are returned
    in pool order.
    """
    eligible = is_eligible or (lambda _c: True)
    flags = [eligible(c) for c in candidates]
    if n <= 0:
        return []
    if sum(flags) <= n:
        return [c for c, ok in zip(candidates, flags) if ok]

    # Rejection sampling over the whole pool: terminates because more than
    # n indices are acceptable.
    rand = rng or random
    chosen: list[int] = []
    used: set[int] = set()
    while len(chosen) < n:
        idx = rand.randrange(len(candidates))
        if idx in used or not flags[idx]:
            continue
        used.add(idx)
        chosen.append(idx)
    return [candidates[i] for i in chosen]


def random_lite_nodes(
    poller: StatusPoller,
    n: int,
    need_logging_passcode: bool = False,
    rng: Optional[random.Random] = None,
) -> list[LiteNode]:
    """Active lite nodes; with *need_logging_passcode* only unassigned ones."""
    now = poller.now()

    def eligible(node: LiteNode) -> bool:
        status = poller.lite_status(node.server)
        if status is None or not is_node_active(status.last_tick_changed, now):
            return False
        return node.has_default_passcode if need_logging_passcode else True

    return select_random(poller.lite_nodes, n, eligible, rng)


def random_bob_nodes(
    poller: StatusPoller,
    n: int,
    rng: Optional[random.Random] = None,
) -> list[BobNode]:
    now = poller.now()

    def eligible(node: BobNode) -> bool:
        status = poller.bob_status(node.server)
        return status is not None and is_node_active(status.last_tick_changed, now)

    return select_random(poller.bob_nodes, n, eligible, rng)


# ── automatic p2p wiring for a batch deploy ──────────────────────────────

AUTO_P2P = "auto_p2p"
P2P_SEED_COUNT = 4
P2P_WAITING_PEERS = 3


def is_auto_p2p(peers: Sequence[str]) -> bool:
    return bool(peers) and peers[0] == AUTO_P2P


def assemble_p2p_peers(
    servers: Sequence[str],
    baremetal: Sequence[str],
    rng: Optional[random.Random] = None,
) -> dict[str, list[str]]:
    """Peer list per server for a batch deployed with ``auto_p2p``.

    A few random seed servers peer with the *baremetal* nodes.  Every other
    server, in random order, gets up to three peers among the servers not
    wired yet (topped up from wired ones when too few are left) plus one
    already wired server, so the batch forms one connected mesh.
    """
    rand = rng or random.Random()
    order = list(dict.fromkeys(servers))
    rand.shuffle(order)

    peer_map: dict[str, list[str]] = {}
    connected: list[str] = []
    for seed in order[:P2P_SEED_COUNT]:
        peer_map[seed] = list(baremetal)
        connected.append(seed)

    for server in order[P2P_SEED_COUNT:]:
        waiting = [s for s in order if s not in peer_map and s != server]
        picks = rand.sample(waiting, min(P2P_WAITING_PEERS, len(waiting)))
        short = P2P_WAITING_PEERS - len(picks)
        if short:
            picks = rand.sample(connected, min(short, len(connected))) + picks
        unused = [s for s in connected if s not in picks]
        if unused:
            picks.append(rand.choice(unused))
        peer_map[server] = picks
        connected.append(server)
    return peer_map
