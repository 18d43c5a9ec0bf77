"""Marginalia assistant service entry point.

Initializes all components and starts the server:
  Settings -> Database -> Stores -> UsageGate -> ToolGateway -> Runner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from marginalia.api.auth import JWTVerifier
from marginalia.api.mcp import ToolGateway
from marginalia.api.runner import AssistantRunner
from marginalia.config import Settings
from marginalia.storage.database import Database
from marginalia.storage.projects import ProjectStore
from marginalia.storage.servers import ToolServerStore
from marginalia.usage import UsageGate

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    database = Database(settings)
    await database.connect()
    await database.create_schema()
    logger.info("Database connected")

    projects = ProjectStore(database, settings)
    servers = ToolServerStore(database, settings)
    usage = UsageGate(database, settings)
    gateway = ToolGateway(servers, settings)

    runner = AssistantRunner(settings, projects, usage, gateway)
    await runner.start()

    return {
        "database": database,
        "projects": projects,
        "servers": servers,
        "usage": usage,
        "gateway": gateway,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Marginalia...")

    runner = components.get("runner")
    if runner:
        await runner.close()

    gateway = components.get("gateway")
    if gateway:
        await gateway.shutdown()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Marginalia shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components come up in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "Marginalia started: model=%s, max_tool_rounds=%d",
            settings.model,
            settings.max_tool_rounds,
        )
        yield
        await shutdown_components(components)

    from marginalia.api.rest import create_app

    return create_app(
        runner=_lazy_component(components, "runner"),
        projects=_lazy_component(components, "projects"),
        servers=_lazy_component(components, "servers"),
        usage=_lazy_component(components, "usage"),
        gateway=_lazy_component(components, "gateway"),
        verifier=JWTVerifier(settings),
        database=_lazy_component(components, "database"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Lets create_app() receive component references before the lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized — lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point — parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Marginalia assistant service")
    logger.info("Model: %s", settings.model)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set — "
            "chat requests will fail"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
