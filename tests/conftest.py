"""Shared pytest fixtures."""

from __future__ import annotations

import os

# Force settings to use test-safe defaults before any import
os.environ.setdefault("FLEET_API_KEY", "")
os.environ.setdefault("INVENTORY_PATH", "")
os.environ.setdefault("SNAPSHOT_SCHEDULER_ENABLED", "false")

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from nodefleet.config import Settings
from nodefleet.models.nodes import BobNode, LiteNode
from nodefleet.services.container import ServiceContainer
from nodefleet.services.ssh_executor import RemoteExecutor
from nodefleet.services.store import InMemoryNodeStore
from tests.factories import BOB_HOST, LITE_HOST, make_server
from tests.mock_ssh import FakeTransport


@pytest.fixture
def setup_script(tmp_path):
    path = tmp_path / "general-setup.sh"
    path.write_text(
        "# provisioning\n\nsudo apt-get update -y\nsudo apt-get install -y screen\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def test_settings(setup_script):
    return Settings(
        fleet_api_key="",
        setup_script_path=str(setup_script),
        ssh_lock_poll_interval_seconds=0.01,
        poll_interval_seconds=0.01,
        status_timeout_seconds=0.5,
        running_ids_retries=2,
        running_ids_retry_delay_seconds=0,
        snapshot_scheduler_enabled=False,
    )


@pytest.fixture
def fake_ssh():
    """Provide a fresh FakeTransport."""
    return FakeTransport()


@pytest.fixture
def executor(fake_ssh, test_settings):
    return RemoteExecutor(fake_ssh, test_settings)


@pytest.fixture
def store():
    s = InMemoryNodeStore()
    s.add_server(make_server(LITE_HOST, ip_info={"country": "DE", "city": "Berlin"}))
    s.add_server(make_server(BOB_HOST, operator="bob-ops", ram="128Gi"))
    s.register_node(LiteNode(server=LITE_HOST, operator="alice"))
    s.register_node(BobNode(server=BOB_HOST, operator="bob-ops"))
    return s


def node_api_handler(request: httpx.Request) -> httpx.Response:
    """Canned node HTTP API: lite on 41841, bob on 40420."""
    if request.url.path == "/tick-info":
        return httpx.Response(200, json={"tick": 1000, "epoch": 150, "alignedVotes": 451})
    if request.url.path == "/status":
        return httpx.Response(200, json={"currentFetchingTick": 990, "bobVersion": "1.2.0"})
    if request.url.path == "/shutdown":
        return httpx.Response(200, json={"ok": True})
    return httpx.Response(404)


@pytest.fixture
async def services(store, executor, test_settings):
    http = httpx.AsyncClient(transport=httpx.MockTransport(node_api_handler))
    container = ServiceContainer(store, executor, test_settings, http_client=http)
    yield container
    await container.orchestrator.drain()
    await container.poller.stop()
    await http.aclose()


@pytest.fixture
async def client(services):
    """Async test client with the fake SSH transport injected."""
    from nodefleet.main import create_app

    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
