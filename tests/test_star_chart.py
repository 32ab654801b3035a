"""Tests for the bulk star chart loader and local chart queries."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

import httpx
import pytest

from conftest import FakeSpaceTraders, settle, wait_for
from spiff.agent import AgentStore, ServerResetBehavior
from spiff.client import ApiClient
from spiff.db import Database, Transaction
from spiff.events import EventHub, EventType, ServerEvent
from spiff.server_reset import Component, ServerResetTracker
from spiff.star_chart import StarChart, StarChartError

TOKEN = "tok"


@pytest.fixture
def events() -> EventHub:
    return EventHub()


@pytest.fixture
async def make_chart(
    db: Database,
    client: ApiClient,
    tracker: ServerResetTracker,
    agents: AgentStore,
    events: EventHub,
) -> AsyncIterator[Callable[..., StarChart]]:
    charts: list[StarChart] = []

    def _make(chart_client: ApiClient | None = None) -> StarChart:
        chart = StarChart(db, chart_client or client, tracker, agents, events=events, page_size=2)
        charts.append(chart)
        return chart

    yield _make
    for chart in charts:
        await chart.shutdown()


async def _select_agent(agents: AgentStore, api: FakeSpaceTraders) -> None:
    api.add_agent(TOKEN, "ALPHA")
    await agents.add_agent(TOKEN)


async def _count(db: Database, table: str) -> int:
    async def _query(tx: Transaction) -> int:
        return tx.scalar(f"SELECT COUNT(*) FROM {table}")

    return await db.enqueue(_query)


def _drain(queue: asyncio.Queue[ServerEvent]) -> list[ServerEvent]:
    drained = []
    while not queue.empty():
        drained.append(queue.get_nowait())
    return drained


class TestBulkLoad:
    async def test_full_load(
        self,
        make_chart: Callable[..., StarChart],
        agents: AgentStore,
        api: FakeSpaceTraders,
        events: EventHub,
        db: Database,
    ) -> None:
        api.add_systems(5)
        queue = events.subscribe()
        chart = make_chart()
        await chart.init()
        assert chart.status().initialized is False

        # Selecting the first agent starts the load.
        await _select_agent(agents, api)
        assert chart.loading
        await chart.join()

        status = chart.status()
        assert status.error_message is None
        assert status.initialized is True
        assert status.total_pages_needed == 3
        assert status.pages_loaded == 3
        assert status.system_count == 5
        assert status.system_waypoints_loaded == 5
        assert api.system_pages_fetched() == [1, 2, 3]

        progress = [e for e in _drain(queue) if e.type is EventType.STAR_CHART_LOAD_PROGRESS]
        # One after metadata, one per page and one per system.
        assert len(progress) == 1 + 3 + 5
        assert progress[-1].data == {
            "system_count": 5,
            "total_pages_needed": 3,
            "pages_loaded": 3,
            "system_waypoints_loaded": 5,
        }

        assert await _count(db, "system") == 5
        assert await _count(db, "sector") == 1
        assert await _count(db, "system_type") == 2
        assert await _count(db, "waypoint") == 10
        assert await _count(db, "waypoint_trait_type") == 1
        assert await _count(db, "waypoint_orbit") == 5

    async def test_resumes_where_it_stopped(
        self,
        make_chart: Callable[..., StarChart],
        agents: AgentStore,
        api: FakeSpaceTraders,
        events: EventHub,
    ) -> None:
        """A restarted load re-fetches nothing it already stored."""
        api.add_systems(5)
        api.failures.add("systems:2")
        chart = make_chart()
        await chart.init()
        await _select_agent(agents, api)
        await chart.join()

        status = chart.status()
        assert status.error_message is not None
        assert "page 2" in status.error_message
        assert api.system_pages_fetched() == [1, 2]

        await chart.shutdown()
        api.failures.clear()
        api.requests.clear()
        queue = events.subscribe()

        restarted = make_chart()
        await restarted.init()
        await restarted.join()

        assert api.system_pages_fetched() == [2, 3]
        first = _drain(queue)[0]
        assert first.type is EventType.STAR_CHART_LOAD_PROGRESS
        assert first.data["pages_loaded"] == 1
        assert restarted.status().pages_loaded == 3
        assert restarted.status().system_waypoints_loaded == 5

    async def test_count_failure_reported(
        self,
        make_chart: Callable[..., StarChart],
        agents: AgentStore,
        api: FakeSpaceTraders,
        events: EventHub,
    ) -> None:
        api.add_systems(1)
        api.failures.add("systems:1")
        queue = events.subscribe()
        chart = make_chart()
        await chart.init()
        await _select_agent(agents, api)
        await chart.join()

        assert chart.status().error_message.startswith("Failed to get system count")
        errors = [e for e in _drain(queue) if e.type is EventType.STAR_CHART_LOAD_ERROR]
        assert len(errors) == 1
        assert errors[0].data["message"] == chart.status().error_message

    async def test_waypoint_failure_aborts_load(
        self,
        make_chart: Callable[..., StarChart],
        agents: AgentStore,
        api: FakeSpaceTraders,
    ) -> None:
        api.add_systems(3)
        api.failures.add("waypoints:X1-S0")
        chart = make_chart()
        await chart.init()
        await _select_agent(agents, api)
        await chart.join()

        message = chart.status().error_message
        assert message is not None and "X1-S0" in message
        # No retries: the failing system was asked for once and nothing after it.
        waypoint_paths = [p for p in api.paths() if p.endswith("/waypoints")]
        assert waypoint_paths == ["systems/X1-S0/waypoints"]


class TestCancellation:
    async def test_concurrent_cancels_share_one_unwind(
        self,
        make_chart: Callable[..., StarChart],
        make_client: Callable[..., ApiClient],
        agents: AgentStore,
        api: FakeSpaceTraders,
    ) -> None:
        gate = asyncio.Event()
        blocked: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/waypoints"):
                blocked.append(request.url.path)
                await gate.wait()
            return api.handler(request)

        api.add_systems(3)
        chart = make_chart(make_client(handler))
        await chart.init()
        await _select_agent(agents, api)
        await wait_for(lambda: blocked)
        assert chart.loading

        first = asyncio.create_task(chart.cancel_load())
        second = asyncio.create_task(chart.cancel_load())
        await settle()
        assert not first.done() and not second.done()

        gate.set()
        await asyncio.wait_for(asyncio.gather(first, second), timeout=5)
        assert not chart.loading
        status = chart.status()
        assert status.error_message is None
        # The system whose request was in flight is stored; nothing after it.
        assert status.system_waypoints_loaded == 1

    async def test_failure_during_shutdown_is_silent(
        self,
        make_chart: Callable[..., StarChart],
        make_client: Callable[..., ApiClient],
        agents: AgentStore,
        api: FakeSpaceTraders,
        events: EventHub,
    ) -> None:
        gate = asyncio.Event()
        blocked: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/waypoints"):
                blocked.append(request.url.path)
                await gate.wait()
                return httpx.Response(500, json={"error": {"code": 500, "message": "down"}})
            return api.handler(request)

        api.add_systems(1)
        chart = make_chart(make_client(handler))
        await chart.init()
        await _select_agent(agents, api)
        await wait_for(lambda: blocked)
        queue = events.subscribe()

        shutting_down = asyncio.create_task(chart.shutdown())
        await settle()
        gate.set()
        await asyncio.wait_for(shutting_down, timeout=5)

        assert not chart.loading
        assert chart.status().error_message is not None
        assert _drain(queue) == []

    async def test_refuses_to_start(
        self,
        make_chart: Callable[..., StarChart],
        tracker: ServerResetTracker,
        api: FakeSpaceTraders,
    ) -> None:
        chart = make_chart()
        await chart.init()
        with pytest.raises(StarChartError):
            await chart.start_load(TOKEN, tracker.current_epoch_id() + 1)

        await chart.shutdown()
        with pytest.raises(StarChartError):
            await chart.start_load(TOKEN, tracker.current_epoch_id())


class TestReset:
    async def test_wipe_on_server_reset(
        self,
        make_chart: Callable[..., StarChart],
        agents: AgentStore,
        api: FakeSpaceTraders,
        tracker: ServerResetTracker,
        db: Database,
    ) -> None:
        api.add_systems(3)
        chart = make_chart()
        await chart.init()
        await _select_agent(agents, api)
        await chart.join()
        assert await _count(db, "waypoint") == 6

        # The selected agent is left over from the old epoch, so nothing reloads.
        api.reset_date = "2024-01-08"
        await tracker.poll()

        assert chart.status().initialized is False
        assert not chart.loading
        for table in ("system_load", "waypoint_load", "system", "waypoint", "sector"):
            assert await _count(db, table) == 0
        assert await tracker.is_component_up_to_date(Component.STAR_CHART)

    async def test_reload_for_recreated_agent(
        self,
        make_chart: Callable[..., StarChart],
        agents: AgentStore,
        api: FakeSpaceTraders,
        tracker: ServerResetTracker,
    ) -> None:
        api.add_systems(2)
        chart = make_chart()
        await chart.init()
        await _select_agent(agents, api)
        await chart.join()
        await agents.set_server_reset_behavior(ServerResetBehavior.RECREATE)

        api.requests.clear()
        api.reset_date = "2024-01-08"
        await tracker.poll()
        await chart.join()

        assert chart.status().initialized is True
        assert chart.status().system_waypoints_loaded == 2
        assert api.system_pages_fetched() == [1]
        selected = await agents.get_selected_agent()
        assert all(
            r.headers["Authorization"] == f"Bearer {selected.auth_token}"
            for r in api.requests
            if r.url.path.endswith("/waypoints")
        )

    async def test_stale_cache_wiped_at_startup(
        self,
        make_chart: Callable[..., StarChart],
        db: Database,
        client: ApiClient,
        clock,
        agents: AgentStore,
        api: FakeSpaceTraders,
    ) -> None:
        api.add_systems(2)
        chart = make_chart()
        await chart.init()
        await _select_agent(agents, api)
        await chart.join()
        await chart.shutdown()

        api.reset_date = "2024-01-08"
        restarted_tracker = ServerResetTracker(db, client, clock=clock)
        await restarted_tracker.init()
        try:
            restarted = StarChart(db, client, restarted_tracker, agents, page_size=2)
            await restarted.init()
            assert await _count(db, "system") == 0
            assert not restarted.loading
        finally:
            await restarted_tracker.shutdown()


class TestQueries:
    @pytest.fixture
    async def loaded(
        self,
        make_chart: Callable[..., StarChart],
        agents: AgentStore,
        api: FakeSpaceTraders,
    ) -> StarChart:
        api.add_systems(4)
        chart = make_chart()
        await chart.init()
        await _select_agent(agents, api)
        await chart.join()
        return chart

    async def test_system_waypoints(self, loaded: StarChart, api: FakeSpaceTraders) -> None:
        api.requests.clear()
        result = await loaded.get_system_waypoints(TOKEN, "X1-S1")
        assert api.requests == []

        assert result.system.symbol == "X1-S1"
        assert (result.system.position.x, result.system.position.y) == (10, -10)
        assert result.system.type.symbol == "RED_STAR"
        planet = result.waypoints["X1-S1-A1"]
        moon = result.waypoints["X1-S1-A2"]
        assert planet.type.symbol == "PLANET"
        assert [t.symbol for t in planet.traits] == ["MARKETPLACE"]
        assert planet.orbitals == ["X1-S1-A2"]
        assert planet.orbits is None
        assert moon.orbits == "X1-S1-A1"
        assert moon.traits == []

    async def test_sibling_waypoints(self, loaded: StarChart) -> None:
        result = await loaded.get_sibling_waypoints(TOKEN, "X1-S2-A2")
        assert result.system.symbol == "X1-S2"
        assert set(result.waypoints) == {"X1-S2-A1", "X1-S2-A2"}

    async def test_bad_symbols(self, loaded: StarChart) -> None:
        with pytest.raises(StarChartError, match="Unknown system"):
            await loaded.get_system_waypoints(TOKEN, "X9-NOPE")
        with pytest.raises(StarChartError, match="expected format"):
            await loaded.get_sibling_waypoints(TOKEN, "NOT_A_WAYPOINT")
        with pytest.raises(StarChartError, match="Unknown system"):
            await loaded.get_sibling_waypoints(TOKEN, "X9-NOPE-A1")

    async def test_local_systems(self, loaded: StarChart) -> None:
        systems = await loaded.get_local_systems(0, 20, -20, 0)
        assert sorted(systems) == ["X1-S0", "X1-S1", "X1-S2"]
        assert systems["X1-S0"].sector.symbol == "X1"
        assert systems["X1-S2"].type.symbol == "BLUE_STAR"


class TestOnDemandLoad:
    async def test_unloaded_system_fetched_at_query(
        self,
        make_chart: Callable[..., StarChart],
        agents: AgentStore,
        api: FakeSpaceTraders,
    ) -> None:
        """Waypoints of a system the bulk load never reached are fetched on request."""
        api.add_systems(4)
        api.failures.add("waypoints:X1-S0")
        chart = make_chart()
        await chart.init()
        await _select_agent(agents, api)
        await chart.join()
        assert chart.status().error_message is not None

        api.requests.clear()
        result = await chart.get_sibling_waypoints(TOKEN, "X1-S3-A1")
        assert api.paths() == ["systems/X1-S3/waypoints"]
        assert set(result.waypoints) == {"X1-S3-A1", "X1-S3-A2"}

        # Stored now; asking again doesn't refetch.
        await chart.get_system_waypoints(TOKEN, "X1-S3")
        assert len(api.requests) == 1

        with pytest.raises(StarChartError, match="X1-S0"):
            await chart.get_system_waypoints(TOKEN, "X1-S0")
