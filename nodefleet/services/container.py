"""Wiring of the long-lived services for one application instance."""

from __future__ import annotations

import httpx

from nodefleet.config import Settings, settings
from nodefleet.services.orchestrator import NodeOrchestrator
from nodefleet.services.poller import Clock, StatusPoller
from nodefleet.services.snapshots import SnapshotScheduler
from nodefleet.services.ssh_executor import RemoteExecutor
from nodefleet.services.store import InMemoryNodeStore, NodeStore
from nodefleet.utils.logging import get_logger

log = get_logger(__name__)


class ServiceContainer:
    """Executor, store, orchestrator, poller and snapshot scheduler."""

    def __init__(
        self,
        store: NodeStore,
        executor: RemoteExecutor,
        cfg: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.cfg = cfg or settings
        self.store = store
        self.executor = executor
        self.orchestrator = NodeOrchestrator(executor, store, self.cfg)
        self.poller = StatusPoller(store, self.cfg, http_client=http_client, clock=clock)
        self.snapshots = SnapshotScheduler(executor, store, self.poller, self.cfg)

    @classmethod
    def from_settings(cls, cfg: Settings | None = None) -> ServiceContainer:
        cfg = cfg or settings
        if cfg.inventory_path:
            store = InMemoryNodeStore.from_inventory(cfg.inventory_path)
        else:
            store = InMemoryNodeStore()
        return cls(store, RemoteExecutor(cfg=cfg), cfg)

    async def start(self) -> None:
        await self.poller.run()
        if self.cfg.snapshot_scheduler_enabled:
            self.snapshots.start()
        log.info("services.started")

    async def stop(self) -> None:
        await self.snapshots.stop()
        await self.poller.stop()
        self.executor.close()
        log.info("services.stopped")
