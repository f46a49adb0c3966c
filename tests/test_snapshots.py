"""Tests for the automatic snapshot scheduler."""

from __future__ import annotations

import asyncio
import random

import httpx
import pytest

from nodefleet.models.nodes import LiteNode
from nodefleet.services.poller import StatusPoller
from nodefleet.services.snapshots import SnapshotScheduler
from nodefleet.services.store import AUTO_SAVE_SNAPSHOT
from tests.factories import LITE_HOST, make_server


class TickSource:
    def __init__(self):
        self.tick = 5_000

    def handler(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"tick": self.tick, "epoch": 150})


@pytest.fixture
def ticks():
    return TickSource()


@pytest.fixture
async def poller(store, test_settings, ticks):
    http = httpx.AsyncClient(transport=httpx.MockTransport(ticks.handler))
    p = StatusPoller(store, test_settings, http_client=http)
    await p.refresh_registered_nodes()
    yield p
    await http.aclose()


@pytest.fixture
def scheduler(executor, store, poller, test_settings):
    return SnapshotScheduler(executor, store, poller, test_settings, rng=random.Random(1))


@pytest.mark.asyncio
async def test_first_cycle_only_fills_window(scheduler, store):
    store.set_automation("alice", AUTO_SAVE_SNAPSHOT, True)
    assert await scheduler.run_cycle() == []
    assert scheduler._batch_size == 1


@pytest.mark.asyncio
async def test_snapshot_sent_when_enabled_and_ticks_advanced(scheduler, store, poller, fake_ssh):
    store.set_automation("alice", AUTO_SAVE_SNAPSHOT, True)
    await poller.poll_lite_once()

    await scheduler.run_cycle()
    sent = await scheduler.run_cycle()
    assert sent == [LITE_HOST]
    await scheduler.drain()
    assert fake_ssh.shell_scripts[0][3] == "screen -S qubic -X stuff $'\\x1b[19~'"


@pytest.mark.asyncio
async def test_snapshot_skipped_without_tick_progress(scheduler, store, poller, ticks, fake_ssh):
    store.set_automation("alice", AUTO_SAVE_SNAPSHOT, True)
    await poller.poll_lite_once()
    await scheduler.run_cycle()
    assert await scheduler.run_cycle() == [LITE_HOST]
    await scheduler.drain()

    # Next window: the node has not moved two id rounds forward
    ticks.tick += 676
    await poller.poll_lite_once()
    await scheduler.run_cycle()
    assert await scheduler.run_cycle() == []
    assert len(fake_ssh.shell_scripts) == 1


@pytest.mark.asyncio
async def test_disabled_automation_is_not_eligible(scheduler, store, poller, fake_ssh):
    await poller.poll_lite_once()
    await scheduler.run_cycle()
    assert await scheduler.run_cycle() == []
    assert fake_ssh.connects == []


@pytest.mark.asyncio
async def test_batch_size_spreads_servers_over_window(executor, store, poller, test_settings):
    store.set_automation("alice", AUTO_SAVE_SNAPSHOT, True)
    for i in range(30):
        host = f"10.1.0.{i}"
        store.add_server(make_server(host))
        store.register_node(LiteNode(server=host, operator="alice"))
    await poller.refresh_registered_nodes()

    scheduler = SnapshotScheduler(executor, store, poller, test_settings)
    await scheduler.run_cycle()
    # 31 eligible servers over 12 batches per hour
    assert scheduler._batch_size == 3


@pytest.mark.asyncio
async def test_busy_host_does_not_stall_the_cycle(scheduler, store, poller, executor, fake_ssh):
    store.set_automation("alice", AUTO_SAVE_SNAPSHOT, True)
    await poller.poll_lite_once()
    await scheduler.run_cycle()

    # Someone else holds the host, e.g. a console tail
    await executor._locks.acquire(LITE_HOST)
    sent = await asyncio.wait_for(scheduler.run_cycle(), timeout=1)
    assert sent == [LITE_HOST]
    assert fake_ssh.connects == []

    # A second cycle does not queue another save behind the first
    await scheduler.run_cycle()
    assert await asyncio.wait_for(scheduler.run_cycle(), timeout=1) == []

    executor.release_lock(LITE_HOST)
    await asyncio.wait_for(scheduler.drain(), timeout=1)
    assert fake_ssh.connects == [LITE_HOST]


@pytest.mark.asyncio
async def test_stop_cancels_pending_saves(scheduler, store, poller, executor, fake_ssh):
    store.set_automation("alice", AUTO_SAVE_SNAPSHOT, True)
    await poller.poll_lite_once()
    await scheduler.run_cycle()
    await executor._locks.acquire(LITE_HOST)
    await scheduler.run_cycle()

    await asyncio.wait_for(scheduler.stop(), timeout=1)
    executor.release_lock(LITE_HOST)
    assert fake_ssh.connects == []
    assert executor.is_busy(LITE_HOST) is False
