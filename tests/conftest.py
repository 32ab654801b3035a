"""Shared fixtures: a controllable clock, a fake SpaceTraders API and a scratch database."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

from spiff.agent import AgentStore
from spiff.client import ApiClient
from spiff.config import Settings
from spiff.db import Database
from spiff.server_reset import ServerResetTracker

BASE_URL = "https://api.test/v2"
START_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()


async def settle(rounds: int = 100) -> None:
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate: Callable[[], object], rounds: int = 1000) -> None:
    """Run the loop until `predicate` holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@dataclass
class FakeTimer:
    when: float
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock:
    """Clock whose time only moves when a test calls advance()."""

    def __init__(self, start: float = START_TIME) -> None:
        self.time = start
        self._timers: list[FakeTimer] = []

    def now(self) -> float:
        return self.time

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self.time + max(0.0, delay), callback)
        self._timers.append(timer)
        return timer

    def pending(self) -> list[FakeTimer]:
        return [t for t in self._timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due timers in order."""
        target = self.time + seconds
        while True:
            due = [t for t in self.pending() if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.when)
            self._timers.remove(timer)
            self.time = max(self.time, timer.when)
            timer.callback()
        self.time = target


def iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class FakeSpaceTraders:
    """In-memory stand-in for the SpaceTraders API, served through httpx.MockTransport."""

    reset_date: str = "2024-01-01"
    next_reset: str | None = iso(START_TIME + 7 * 24 * 3600)
    down: bool = False
    agents: dict[str, dict[str, Any]] = field(default_factory=dict)
    outdated_tokens: set[str] = field(default_factory=set)
    systems: list[dict[str, Any]] = field(default_factory=list)
    waypoints: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    failures: set[str] = field(default_factory=set)
    requests: list[httpx.Request] = field(default_factory=list)

    def add_agent(self, token: str, symbol: str, faction: str = "COSMIC") -> None:
        self.agents[token] = {
            "symbol": symbol,
            "startingFaction": faction,
            "headquarters": "X1-S0-A1",
            "credits": 175000,
        }

    def add_systems(self, count: int) -> None:
        for i in range(len(self.systems), len(self.systems) + count):
            symbol = f"X1-S{i}"
            self.systems.append({
                "symbol": symbol,
                "sectorSymbol": "X1",
                "type": "RED_STAR" if i % 2 else "BLUE_STAR",
                "x": i * 10,
                "y": -i * 10,
            })
            self.waypoints[symbol] = [
                {
                    "symbol": f"{symbol}-A1",
                    "type": "PLANET",
                    "systemSymbol": symbol,
                    "x": 1,
                    "y": 2,
                    "orbitals": [{"symbol": f"{symbol}-A2"}],
                    "traits": [
                        {"symbol": "MARKETPLACE", "name": "Marketplace", "description": "Trade."},
                    ],
                },
                {
                    "symbol": f"{symbol}-A2",
                    "type": "MOON",
                    "systemSymbol": symbol,
                    "x": 1,
                    "y": 2,
                    "orbitals": [],
                    "orbits": f"{symbol}-A1",
                    "traits": [],
                },
            ]

    def paths(self) -> list[str]:
        return [_api_path(r) for r in self.requests]

    def system_pages_fetched(self) -> list[int]:
        """Pages of the system list fetched at full size (the count probe is excluded)."""
        return [
            int(r.url.params["page"])
            for r in self.requests
            if _api_path(r) == "systems" and r.url.params.get("limit") != "1"
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = _api_path(request)
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")

        if path == "":
            if self.down:
                raise httpx.ConnectError("server is resetting", request=request)
            return httpx.Response(200, json={
                "status": "SpaceTraders is currently online",
                "version": "v2.1.0",
                "resetDate": self.reset_date,
                "serverResets": {"next": self.next_reset, "frequency": "weekly"},
            })

        if path == "my/agent":
            if token in self.outdated_tokens:
                return _error(401, 401, "Token reset_date does not match the server reset_date")
            if token not in self.agents:
                return _error(401, 4103, "Invalid token")
            return httpx.Response(200, json={"data": self.agents[token]})

        if path == "register":
            body = json.loads(request.content)
            new_token = f"token-{body['symbol']}-{len(self.agents)}"
            self.add_agent(new_token, body["symbol"], body["faction"])
            return httpx.Response(201, json={
                "data": {"agent": self.agents[new_token], "token": new_token},
            })

        page = int(request.url.params.get("page", 1))
        limit = int(request.url.params.get("limit", 20))

        if path == "systems":
            if f"systems:{page}" in self.failures:
                return _error(500, 500, f"Page {page} exploded")
            return _page(self.systems, page, limit)

        parts = path.split("/")
        if len(parts) == 3 and parts[0] == "systems" and parts[2] == "waypoints":
            if f"waypoints:{parts[1]}" in self.failures:
                return _error(500, 500, f"Waypoints of {parts[1]} exploded")
            return _page(self.waypoints.get(parts[1], []), page, limit)

        return _error(404, 404, f"No route for {path}")


def _api_path(request: httpx.Request) -> str:
    return request.url.path.removeprefix("/v2").strip("/")


def _error(status: int, code: int, message: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": code, "message": message}})


def _page(items: list[dict[str, Any]], page: int, limit: int) -> httpx.Response:
    start = (page - 1) * limit
    return httpx.Response(200, json={
        "data": items[start:start + limit],
        "meta": {"total": len(items), "page": page, "limit": limit},
    })


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        base_url=BASE_URL,
        data_dir=tmp_path,
        # Loose limits: only the dispatcher tests exercise rate limiting.
        rate_limits=[(1000, 1.0)],
    )


@pytest.fixture
def api() -> FakeSpaceTraders:
    return FakeSpaceTraders()


@pytest.fixture
async def make_client(
    settings: Settings, clock: FakeClock,
) -> AsyncIterator[Callable[..., ApiClient]]:
    """Factory for ApiClients backed by a mock transport; closed after the test."""
    clients: list[ApiClient] = []

    def _make(handler: Callable[[httpx.Request], Any], **overrides: Any) -> ApiClient:
        cfg = settings.model_copy(update=overrides)
        client = ApiClient(cfg, clock=clock, transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.close()


@pytest.fixture
async def client(make_client: Callable[..., ApiClient], api: FakeSpaceTraders) -> ApiClient:
    return make_client(api.handler)


@pytest.fixture
async def db(tmp_path: Path) -> AsyncIterator[Database]:
    database = Database(tmp_path / "spiff" / "data.sqlite")
    database.open()
    yield database
    await database.close()


@pytest.fixture
async def tracker(
    db: Database, client: ApiClient, clock: FakeClock,
) -> AsyncIterator[ServerResetTracker]:
    tracker = ServerResetTracker(db, client, clock=clock)
    await tracker.init()
    yield tracker
    await tracker.shutdown()


@pytest.fixture
async def agents(db: Database, client: ApiClient, tracker: ServerResetTracker) -> AgentStore:
    store = AgentStore(db, client, tracker)
    await store.init()
    return store
