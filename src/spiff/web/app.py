"""FastAPI application factory with lifespan management."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request

from spiff.agent import AgentStore
from spiff.client import ApiClient
from spiff.clock import Clock
from spiff.config import Settings, load_settings
from spiff.db import Database
from spiff.events import EventHub
from spiff.server_reset import ServerResetTracker
from spiff.star_chart import StarChart

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    `transport` and `clock` are handed to the API client and the reset tracker,
    which lets tests run the whole server against a fake SpaceTraders API.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Open the database and start every component, in dependency order."""
        cfg = settings or load_settings()
        db = Database(cfg.database_path)
        db.open()
        client = ApiClient(cfg, clock=clock, transport=transport)
        events = EventHub()
        server_reset = ServerResetTracker(
            db,
            client,
            events=events,
            clock=clock,
            poll_interval=cfg.reset_poll_interval,
            early_window=cfg.reset_early_window,
        )
        agents = AgentStore(db, client, server_reset)
        star_chart = StarChart(db, client, server_reset, agents, events=events)
        try:
            await server_reset.init()
            await agents.init()
            await star_chart.init()

            app.state.settings = cfg
            app.state.db = db
            app.state.client = client
            app.state.events = events
            app.state.server_reset = server_reset
            app.state.agents = agents
            app.state.star_chart = star_chart
            logger.info("Server ready")
            yield
        finally:
            logger.info("Shutting down")
            await star_chart.shutdown()
            await server_reset.shutdown()
            await client.close()
            await db.close()

    app = FastAPI(title="Spiff", lifespan=lifespan)

    # Register routes
    from spiff.web.routes import agent, events, forward, star_chart

    app.include_router(forward.router)
    app.include_router(agent.router)
    app.include_router(star_chart.router)
    app.include_router(events.router)

    return app


def get_client(request: Request) -> ApiClient:
    """Extract the shared API client from app state."""
    return request.app.state.client


def get_agents(request: Request) -> AgentStore:
    return request.app.state.agents


def get_star_chart(request: Request) -> StarChart:
    return request.app.state.star_chart


def ok(result: Any = None) -> dict[str, Any]:
    """Successful command response."""
    return {"success": True, "result": result}


def fail(message: str) -> dict[str, Any]:
    """Failed command response."""
    return {"success": False, "error_message": message}
