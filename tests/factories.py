"""Canned servers shared by the test modules."""

from __future__ import annotations

from nodefleet.models.nodes import DeployStatus, ServerRecord, ServiceType

LITE_HOST = "10.0.0.1"
BOB_HOST = "10.0.0.2"


def make_server(host: str, **overrides) -> ServerRecord:
    fields = dict(
        server=host,
        operator="alice",
        username="root",
        password="secret",
        ram="64Gi",
        status=DeployStatus.active,
        services=[ServiceType.lite_node, ServiceType.bob_node],
    )
    fields.update(overrides)
    return ServerRecord(**fields)
