"""Tests for the console tail WebSocket."""

from __future__ import annotations

import asyncio
import time

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from nodefleet.main import create_app
from nodefleet.models.nodes import ServiceType
from nodefleet.routers.logs import tail_command
from nodefleet.services.container import ServiceContainer
from tests.factories import LITE_HOST


@pytest.fixture
def ws_client(store, executor, test_settings):
    container = ServiceContainer(
        store, executor, test_settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))),
    )
    return TestClient(create_app(container))


def test_tail_command():
    assert tail_command(ServiceType.lite_node) == "screen -r qubic -d"
    assert tail_command(ServiceType.bob_node) == "screen -r bob -d"


def test_tail_streams_output(ws_client, fake_ssh):
    fake_ssh.shell_output = ["tick 1000 | epoch 150\n"]
    logs = []
    with ws_client.websocket_connect(f"/ws/logs/{LITE_HOST}/liteNode") as ws:
        try:
            while True:
                logs.append(ws.receive_json())
        except WebSocketDisconnect:
            pass
    assert all(m["service"] == "liteNode" for m in logs)
    assert any("tick 1000" in m["log"] for m in logs)
    assert fake_ssh.shell_scripts[0][3] == "screen -r qubic -d"


def test_disconnect_aborts_session(ws_client, fake_ssh, executor):
    fake_ssh.gate = asyncio.Event()
    with ws_client.websocket_connect(f"/ws/logs/{LITE_HOST}/liteNode") as ws:
        first = ws.receive_json()
        assert "Welcome" in first["log"]

    deadline = time.monotonic() + 2
    while executor.is_busy(LITE_HOST) and time.monotonic() < deadline:
        time.sleep(0.01)
    assert executor.is_busy(LITE_HOST) is False
    assert fake_ssh.sessions[0].closed.is_set()


def test_unknown_server_rejected(ws_client):
    with pytest.raises(WebSocketDisconnect):
        with ws_client.websocket_connect("/ws/logs/203.0.113.7/liteNode") as ws:
            ws.receive_json()


def test_disconnect_while_queued_leaves_lock_holder_alone(ws_client, fake_ssh, executor):
    # Another call (a deploy, say) owns the host for the whole tail
    asyncio.run(executor._locks.acquire(LITE_HOST))
    with ws_client.websocket_connect(f"/ws/logs/{LITE_HOST}/liteNode"):
        time.sleep(0.05)

    assert executor.is_busy(LITE_HOST) is True
    executor.release_lock(LITE_HOST)
    time.sleep(0.05)
    # The dropped tail never connects once the host frees up
    assert fake_ssh.connects == []
