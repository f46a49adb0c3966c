"""FastAPI application entry-point."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from nodefleet import __version__
from nodefleet.routers import commands, deployment, health, logs, nodes
from nodefleet.services.container import ServiceContainer
from nodefleet.utils.logging import setup_logging


def create_app(services: ServiceContainer | None = None) -> FastAPI:
    """Build the app around *services* (default: wired from settings)."""
    setup_logging()
    container = services or ServiceContainer.from_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown hooks."""
        await container.start()
        yield
        await container.stop()

    app = FastAPI(
        title="Node Fleet Control Plane",
        description="Deploys, restarts and monitors lite and bob nodes over SSH",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = container

    app.include_router(health.router)
    app.include_router(nodes.router)
    app.include_router(deployment.router)
    app.include_router(commands.router)
    app.include_router(logs.router)
    return app


app = create_app()
