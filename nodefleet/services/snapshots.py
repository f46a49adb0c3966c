"""Automatic lite-node snapshot saving.

Every save interval one batch of eligible servers is asked to save a
snapshot, sized so that every eligible server comes up once per window.
Saves run in the background: a host whose lock is held elsewhere delays
only its own save, never the cycle.
A server is eligible when it has SSH credentials, runs a registered lite
node and its operator enabled the ``auto-save-snapshot`` automation.
"""

from __future__ import annotations

import asyncio
import math
import random
from typing import Optional

from nodefleet.config import Settings, settings
from nodefleet.models.nodes import ServerRecord
from nodefleet.services.poller import StatusPoller
from nodefleet.services.quick_commands import save_snapshot_commands
from nodefleet.services.ssh_executor import RemoteExecutor
from nodefleet.services.store import AUTO_SAVE_SNAPSHOT, NodeStore
from nodefleet.utils.logging import get_logger
from nodefleet.utils.node import DEFAULT_ID_COUNT

log = get_logger(__name__)

# Ticks a node must advance between two saves
MIN_TICK_PROGRESS = 2 * DEFAULT_ID_COUNT


class SnapshotScheduler:
    def __init__(
        self,
        executor: RemoteExecutor,
        store: NodeStore,
        poller: StatusPoller,
        cfg: Settings | None = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._executor = executor
        self._store = store
        self._poller = poller
        self._cfg = cfg or settings
        self._rng = rng or random.Random()

        self._pending: list[ServerRecord] = []
        self._batch_size = 0
        self._last_save_tick: dict[str, int] = {}
        self._saving: dict[str, asyncio.Task] = {}
        self._task: asyncio.Task | None = None

    @property
    def batches_per_window(self) -> int:
        return max(
            1,
            int(self._cfg.snapshot_window_seconds // self._cfg.snapshot_save_interval_seconds),
        )

    async def _enabled_operators(self, operators: set[str]) -> set[str]:
        enabled = set()
        for operator in operators:
            if await self._store.is_automation_enabled(operator, AUTO_SAVE_SNAPSHOT):
                enabled.add(operator)
        return enabled

    async def _eligible_servers(self, enabled: set[str]) -> list[ServerRecord]:
        lite_hosts = {n.server for n in self._poller.lite_nodes}
        servers = await self._store.list_servers()
        return [
            s for s in servers
            if s.username and s.server in lite_hosts and s.operator in enabled
        ]

    async def _next_batch(self, enabled: set[str]) -> list[ServerRecord]:
        if len(self._pending) <= self._batch_size:
            # Window rollover: finish the remainder, then refill
            batch = self._pending
            self._pending = await self._eligible_servers(enabled)
            self._batch_size = math.ceil(len(self._pending) / self.batches_per_window)
            log.info(
                "snapshot.window_reset",
                eligible=len(self._pending),
                batch_size=self._batch_size,
            )
            return batch

        batch = []
        while len(batch) < self._batch_size and self._pending:
            batch.append(self._pending.pop(self._rng.randrange(len(self._pending))))
        return batch

    async def run_cycle(self) -> list[str]:
        """Process one batch; returns the servers a save was sent to."""
        servers = await self._store.list_servers()
        enabled = await self._enabled_operators({s.operator for s in servers})
        batch = await self._next_batch(enabled)

        targets: list[ServerRecord] = []
        for server in batch:
            if server.server in self._saving:
                log.info("snapshot.skipped", host=server.server, reason="save_in_flight")
                continue
            status = self._poller.lite_status(server.server)
            current = status.tick if status and status.tick > 0 else 0
            last = self._last_save_tick.get(server.server, 0)
            if current - last <= MIN_TICK_PROGRESS:
                log.info("snapshot.skipped", host=server.server, reason="tick_progress")
                continue
            if server.operator not in enabled:
                log.info("snapshot.skipped", host=server.server, reason="automation_disabled")
                continue
            self._last_save_tick[server.server] = current
            targets.append(server)

        for server in targets:
            self._saving[server.server] = asyncio.create_task(self._save(server))
        return [s.server for s in targets]

    async def _save(self, server: ServerRecord) -> None:
        try:
            result = await self._executor.execute(
                server.credentials(),
                save_snapshot_commands(),
                self._cfg.snapshot_command_timeout_seconds,
            )
        finally:
            self._saving.pop(server.server, None)
        if result.is_success:
            log.info("snapshot.sent", host=server.server)
        else:
            log.warning("snapshot.failed", host=server.server, error=result.stderr_text)

    async def drain(self) -> None:
        """Wait for the saves already sent."""
        while self._saving:
            await asyncio.gather(*list(self._saving.values()), return_exceptions=True)

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except Exception as exc:
                log.error("snapshot.cycle_failed", error=str(exc))
            await asyncio.sleep(self._cfg.snapshot_save_interval_seconds)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            log.info("snapshot.started", interval=self._cfg.snapshot_save_interval_seconds)

    async def stop(self) -> None:
        tasks = list(self._saving.values())
        if self._task is not None:
            tasks.append(self._task)
            self._task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
