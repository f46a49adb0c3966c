"""Live status polling of registered lite and bob nodes.

Two loops, one per node kind, query every registered server over HTTP once
per interval.  Results are merged into in-memory status tables that only
these loops write; readers get copies.

Merge rule per server:

* the entry is (re)written when the request succeeded or no entry exists yet;
* ``last_updated`` is *now* on success, otherwise the previous value (or -1);
* ``last_tick_changed`` is *now* when the tick differs from the previous
  entry's tick, otherwise the previous value (or -1).
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import httpx

from nodefleet.config import Settings, settings
from nodefleet.models.nodes import (
    BobNode,
    BobNodeStatus,
    BobNodeTickInfo,
    LiteNode,
    LiteNodeStatus,
    LiteNodeTickInfo,
    NetworkStatus,
    ServiceType,
)
from nodefleet.services.store import NodeStore
from nodefleet.utils.common import now_ms
from nodefleet.utils.logging import get_logger
from nodefleet.utils.node import calc_group_id_from_ids

log = get_logger(__name__)

Clock = Callable[[], int]


class StatusPoller:
    """Owns the registered-node snapshots and the live status tables."""

    def __init__(
        self,
        store: NodeStore,
        cfg: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._cfg = cfg or settings
        self._client = http_client
        self._owns_client = http_client is None
        self._clock: Clock = clock or now_ms

        self._lite_nodes: list[LiteNode] = []
        self._bob_nodes: list[BobNode] = []
        self._ip_info: dict[str, dict[str, Any]] = {}
        self._lite_status: dict[str, LiteNodeStatus] = {}
        self._bob_status: dict[str, BobNodeStatus] = {}

        self._group_id_checked: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._loops: list[asyncio.Task] = []

    # ── registered nodes ──────────────────────────────────────────────

    @property
    def lite_nodes(self) -> list[LiteNode]:
        return list(self._lite_nodes)

    @property
    def bob_nodes(self) -> list[BobNode]:
        return list(self._bob_nodes)

    async def refresh_registered_nodes(self) -> None:
        """Swap both node snapshots for the store's current lists."""
        try:
            lite = await self._store.list_registered_nodes(ServiceType.lite_node)
            bob = await self._store.list_registered_nodes(ServiceType.bob_node)
        except Exception as exc:
            log.error("poller.refresh_failed", error=str(exc))
            return

        for node in [*lite, *bob]:
            if node.server in self._ip_info:
                continue
            try:
                info = await self._store.find_node_ip_info(node.server)
            except Exception as exc:
                log.error("poller.ip_info_failed", host=node.server, error=str(exc))
                continue
            if info:
                self._ip_info[node.server] = info

        self._lite_nodes = list(lite)
        self._bob_nodes = list(bob)
        log.info("poller.nodes_refreshed", lite=len(lite), bob=len(bob))

    # ── HTTP ──────────────────────────────────────────────────────────

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _lite_url(self, server: str, path: str) -> str:
        return f"http://{server}:{self._cfg.lite_node_http_port}{path}"

    def _bob_url(self, server: str, path: str) -> str:
        return f"http://{server}:{self._cfg.bob_node_http_port}{path}"

    async def _get_json(self, url: str, timeout: float) -> Optional[dict]:
        try:
            resp = await self._http().get(url, timeout=timeout)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.debug("poller.fetch_failed", url=url, error=str(exc))
            return None
        return data if isinstance(data, dict) else None

    async def fetch_lite(self, server: str) -> Optional[LiteNodeTickInfo]:
        data = await self._get_json(
            self._lite_url(server, "/tick-info"), self._cfg.status_timeout_seconds,
        )
        if data is None:
            return None
        try:
            return LiteNodeTickInfo.model_validate(data)
        except ValueError as exc:
            log.debug("poller.bad_payload", host=server, error=str(exc))
            return None

    async def fetch_bob(self, server: str) -> Optional[BobNodeTickInfo]:
        data = await self._get_json(
            self._bob_url(server, "/status"), self._cfg.status_timeout_seconds,
        )
        if data is None:
            return None
        try:
            return BobNodeTickInfo.model_validate(data)
        except ValueError as exc:
            log.debug("poller.bad_payload", host=server, error=str(exc))
            return None

    # ── poll cycles ───────────────────────────────────────────────────

    async def poll_lite_once(self) -> None:
        nodes = list(self._lite_nodes)
        wanted = {n.server for n in nodes}
        for server in list(self._lite_status):
            if server not in wanted:
                del self._lite_status[server]

        infos = await asyncio.gather(*(self.fetch_lite(n.server) for n in nodes))
        now = self._clock()
        for node, info in zip(nodes, infos):
            self._merge_lite(node, info, now)

    def _merge_lite(
        self, node: LiteNode, info: Optional[LiteNodeTickInfo], now: int,
    ) -> None:
        prev = self._lite_status.get(node.server)
        if info is None and prev is not None:
            return
        reported = info or LiteNodeTickInfo()
        prev_tick = prev.tick if prev else -1
        tick_changed = reported.tick != prev_tick
        self._lite_status[node.server] = LiteNodeStatus(
            **reported.model_dump(),
            operator=node.operator or "unknown",
            ip_info=self._ip_info.get(node.server, {}),
            group_id=node.group_id,
            last_updated=now if info is not None else -1,
            last_tick_changed=now if tick_changed else (prev.last_tick_changed if prev else -1),
        )
        if info is not None and not node.group_id and self._loops:
            self._maybe_discover_group_id(node.server)

    async def poll_bob_once(self) -> None:
        nodes = list(self._bob_nodes)
        wanted = {n.server for n in nodes}
        for server in list(self._bob_status):
            if server not in wanted:
                del self._bob_status[server]

        infos = await asyncio.gather(*(self.fetch_bob(n.server) for n in nodes))
        now = self._clock()
        for node, info in zip(nodes, infos):
            self._merge_bob(node, info, now)

    def _merge_bob(
        self, node: BobNode, info: Optional[BobNodeTickInfo], now: int,
    ) -> None:
        prev = self._bob_status.get(node.server)
        if info is None and prev is not None:
            return
        reported = info or BobNodeTickInfo()
        prev_tick = prev.current_fetching_tick if prev else -1
        tick_changed = reported.current_fetching_tick != prev_tick
        fields = reported.model_dump()
        fields["bob_version"] = reported.bob_version or "unknown"
        self._bob_status[node.server] = BobNodeStatus(
            **fields,
            operator=node.operator or "unknown",
            ip_info=self._ip_info.get(node.server, {}),
            last_updated=now if info is not None else -1,
            last_tick_changed=now if tick_changed else (prev.last_tick_changed if prev else -1),
        )

    # ── loops ─────────────────────────────────────────────────────────

    async def _loop(self, name: str, cycle: Callable[[], Any]) -> None:
        while True:
            try:
                await cycle()
            except Exception as exc:
                log.error("poller.cycle_failed", loop=name, error=str(exc))
            await asyncio.sleep(self._cfg.poll_interval_seconds)

    async def run(self) -> None:
        """Load the node lists and start both polling loops."""
        if self._loops:
            return
        await self.refresh_registered_nodes()
        self._loops = [
            asyncio.create_task(self._loop("lite", self.poll_lite_once)),
            asyncio.create_task(self._loop("bob", self.poll_bob_once)),
        ]
        log.info("poller.started", interval=self._cfg.poll_interval_seconds)

    async def stop(self) -> None:
        tasks = [*self._loops, *self._background]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loops = []
        self._background.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        log.info("poller.stopped")

    # ── group id discovery ────────────────────────────────────────────

    def _maybe_discover_group_id(self, server: str) -> None:
        if server in self._group_id_checked:
            return
        self._group_id_checked.add(server)
        task = asyncio.create_task(self.discover_group_id(server))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def fetch_running_ids(self, server: str) -> Optional[list[str]]:
        """``GET /running-ids`` with bounded retries; ``None`` if it never answers."""
        url = self._lite_url(server, "/running-ids")
        retries = max(1, self._cfg.running_ids_retries)
        for attempt in range(1, retries + 1):
            data = await self._get_json(url, self._cfg.running_ids_timeout_seconds)
            ids = data.get("runningIds") if data else None
            if isinstance(ids, list):
                return [str(i) for i in ids]
            if attempt < retries:
                await asyncio.sleep(self._cfg.running_ids_retry_delay_seconds)
        log.warning("poller.running_ids_unavailable", host=server, attempts=retries)
        return None

    async def discover_group_id(self, server: str) -> Optional[str]:
        """Fetch the node's running ids and store them with the derived group id."""
        ids = await self.fetch_running_ids(server)
        if ids is None:
            return None
        group_id = calc_group_id_from_ids(ids)

        self._lite_nodes = [
            n.model_copy(update={"ids": ids, "group_id": group_id})
            if n.server == server else n
            for n in self._lite_nodes
        ]
        status = self._lite_status.get(server)
        if status is not None:
            self._lite_status[server] = status.model_copy(update={"group_id": group_id})

        try:
            await self._store.update_lite_node(server, ids=ids, group_id=group_id)
        except Exception as exc:
            log.error("poller.group_id_persist_failed", host=server, error=str(exc))
        log.info("poller.group_id", host=server, ids=len(ids), group_id=group_id)
        return group_id

    # ── shutdown requests ─────────────────────────────────────────────

    async def request_shutdown(self, server: str) -> bool:
        url = self._lite_url(server, "/shutdown")
        try:
            resp = await self._http().post(url, timeout=self._cfg.status_timeout_seconds)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            log.error("poller.shutdown_request_failed", host=server, error=str(exc))
            return False
        log.info("poller.shutdown_requested", host=server)
        return True

    async def request_shutdown_all(self) -> list[dict[str, Any]]:
        nodes = list(self._lite_nodes)
        results = await asyncio.gather(*(self.request_shutdown(n.server) for n in nodes))
        return [
            {"server": n.server, "success": ok}
            for n, ok in zip(nodes, results)
        ]

    # ── readers ───────────────────────────────────────────────────────

    def now(self) -> int:
        return self._clock()

    def lite_status(self, server: str) -> Optional[LiteNodeStatus]:
        status = self._lite_status.get(server)
        return status.model_copy() if status else None

    def bob_status(self, server: str) -> Optional[BobNodeStatus]:
        status = self._bob_status.get(server)
        return status.model_copy() if status else None

    def get_status(self) -> dict[str, list[dict[str, Any]]]:
        """Both tables as lists of camelCase dicts with ``server``/``region``."""
        return {
            "liteNodes": [
                {"server": server, "region": "", **s.model_dump(by_alias=True)}
                for server, s in self._lite_status.items()
            ],
            "bobNodes": [
                {"server": server, "region": "", **s.model_dump(by_alias=True)}
                for server, s in self._bob_status.items()
            ],
        }

    def get_network_status(self) -> NetworkStatus:
        best = NetworkStatus()
        for status in self._lite_status.values():
            if status.tick > best.tick:
                best = NetworkStatus(tick=status.tick, epoch=status.epoch)
        return best
