"""Local star chart: a cache of every system and waypoint in the galaxy.

The bulk load runs in two phases. Phase 1 pages through the system list. Phase 2
walks every stored system and pulls its waypoints. Progress rows in
`system_load` and `waypoint_load` make both phases resumable: a restarted load
only fetches what isn't marked loaded yet.

Loads are cancelled cooperatively. The load loop checks its `CancellationToken`
between pages and systems, and `cancel_load()` waits for the loop to unwind.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
from typing import Any

from pydantic import ValidationError

from spiff.agent import AgentRecord, AgentStore
from spiff.api import systems as systems_api
from spiff.api.systems import MAX_PAGE_SIZE
from spiff.client import ApiClient
from spiff.db import Database, MetaInt, Transaction
from spiff.events import EventHub, EventType
from spiff.models import (
    ChartSystem,
    ChartWaypoint,
    LoadStatus,
    PaginatedResponse,
    Position,
    SymbolRef,
    System,
    SystemWaypoints,
    Waypoint,
    WaypointTrait,
)
from spiff.scheduler import Priority
from spiff.server_reset import Component, ResetComplete, ServerResetTracker

logger = logging.getLogger(__name__)

STAR_CHART_DB_VERSION = 1

# Child tables first so foreign keys hold while wiping.
_CHART_TABLES = (
    "waypoint_trait",
    "waypoint_trait_type",
    "waypoint_orbit",
    "waypoint",
    "waypoint_type",
    "waypoint_load",
    "system",
    "system_type",
    "sector",
    "system_load",
)

_SELECT_SYSTEM = """
    SELECT system.id AS id, system.symbol AS symbol, system.x AS x, system.y AS y,
           sector.id AS sector_id, sector.symbol AS sector_symbol,
           system_type.id AS type_id, system_type.symbol AS type_symbol
    FROM system
    INNER JOIN sector ON system.sector_id = sector.id
    INNER JOIN system_type ON system.type_id = system_type.id
"""


class StarChartError(Exception):
    """Raised when a chart query can't be answered or a load can't be started."""


class LoadError(Exception):
    """Aborts the running load; the message becomes the load's error status."""


class CancellationToken:
    """One-way cancellation flag shared between a load and whoever cancels it."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


def _chart_system(row: Any) -> ChartSystem:
    return ChartSystem(
        id=row["id"],
        symbol=row["symbol"],
        position=Position(x=row["x"], y=row["y"]),
        sector=SymbolRef(id=row["sector_id"], symbol=row["sector_symbol"]),
        type=SymbolRef(id=row["type_id"], symbol=row["type_symbol"]),
    )


def _lookup_id(tx: Transaction, table: str, symbol: str) -> int:
    """Id of `symbol` in a (id, symbol) lookup table, inserting it if new."""
    existing = tx.scalar(f"SELECT id FROM {table} WHERE symbol = ?", (symbol,))
    if existing is not None:
        return existing
    return tx.execute(f"INSERT INTO {table} (symbol) VALUES (?)", (symbol,)).lastrowid


class StarChart:
    """Bulk loader and query interface for the local star chart."""

    def __init__(
        self,
        db: Database,
        client: ApiClient,
        server_reset: ServerResetTracker,
        agents: AgentStore,
        *,
        events: EventHub | None = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self._db = db
        self._client = client
        self._server_reset = server_reset
        self._agents = agents
        self._events = events
        self.page_size = page_size

        self._load_task: asyncio.Task[None] | None = None
        self._token = CancellationToken()
        self._has_shutdown = False
        self._error_message: str | None = None
        self._metadata_loaded = False
        self._system_count = 0
        self._total_pages_needed = 0
        self._pages_loaded = 0
        self._system_waypoints_loaded = 0

    @property
    def loading(self) -> bool:
        return self._load_task is not None and not self._load_task.done()

    # --- Lifecycle ---

    async def init(self) -> None:
        """Create tables, drop data from older epochs and resume loading for the selected agent."""

        async def _init(tx: Transaction) -> None:
            version = await self._db.module_version(
                MetaInt.STAR_CHART_MODULE_VERSION, STAR_CHART_DB_VERSION, tx=tx,
            )
            if version < STAR_CHART_DB_VERSION:
                if version < 1:
                    self._create_tables(tx)
                await self._db.set_meta_int(
                    MetaInt.STAR_CHART_MODULE_VERSION, STAR_CHART_DB_VERSION, tx=tx,
                )

            if not await self._server_reset.is_component_up_to_date(Component.STAR_CHART, tx=tx):
                await self.reset(tx=tx)

            agent = await self._agents.get_selected_agent(tx=tx)
            if agent is not None and self._agent_is_current(agent):
                await self.start_load(agent.auth_token, agent.server_reset_id)

        await self._db.enqueue(_init, with_transaction=True)
        self._server_reset.on_complete_reset(self._on_reset_complete)
        self._agents.on_selection_change(self._on_selection_change)

    def _create_tables(self, tx: Transaction) -> None:
        tx.execute("""
            CREATE TABLE sector (
                id INTEGER PRIMARY KEY ASC,
                symbol TEXT UNIQUE NOT NULL
            )
        """)
        tx.execute("""
            CREATE TABLE system_type (
                id INTEGER PRIMARY KEY ASC,
                symbol TEXT UNIQUE NOT NULL
            )
        """)
        tx.execute("""
            CREATE TABLE system (
                id INTEGER PRIMARY KEY ASC,
                symbol TEXT UNIQUE NOT NULL,
                sector_id INTEGER NOT NULL,
                type_id INTEGER NOT NULL,
                x INTEGER NOT NULL,
                y INTEGER NOT NULL,
                FOREIGN KEY (sector_id) REFERENCES sector(id),
                FOREIGN KEY (type_id) REFERENCES system_type(id)
            )
        """)
        tx.execute("CREATE INDEX index_system_x ON system(x)")
        tx.execute("CREATE INDEX index_system_y ON system(y)")
        tx.execute("""
            CREATE TABLE system_load (
                page_id INTEGER PRIMARY KEY ASC,
                loaded INTEGER NOT NULL DEFAULT 0
            )
        """)
        tx.execute("CREATE INDEX index_system_load_loaded ON system_load(loaded)")
        tx.execute("""
            CREATE TABLE waypoint_type (
                id INTEGER PRIMARY KEY ASC,
                symbol TEXT UNIQUE NOT NULL
            )
        """)
        tx.execute("""
            CREATE TABLE waypoint (
                id INTEGER PRIMARY KEY ASC,
                system_id INTEGER NOT NULL,
                symbol TEXT UNIQUE NOT NULL,
                type_id INTEGER NOT NULL,
                x INTEGER NOT NULL,
                y INTEGER NOT NULL,
                FOREIGN KEY (system_id) REFERENCES system(id),
                FOREIGN KEY (type_id) REFERENCES waypoint_type(id)
            )
        """)
        tx.execute("CREATE INDEX index_waypoint_system_id ON waypoint(system_id)")
        tx.execute("""
            CREATE TABLE waypoint_orbit (
                orbital INTEGER PRIMARY KEY ASC,
                orbited INTEGER NOT NULL,
                FOREIGN KEY (orbital) REFERENCES waypoint(id),
                FOREIGN KEY (orbited) REFERENCES waypoint(id)
            )
        """)
        tx.execute("""
            CREATE TABLE waypoint_load (
                system_id INTEGER PRIMARY KEY ASC,
                loaded INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (system_id) REFERENCES system(id)
            )
        """)
        tx.execute("CREATE INDEX index_waypoint_load_loaded ON waypoint_load(loaded)")
        tx.execute("""
            CREATE TABLE waypoint_trait_type (
                id INTEGER PRIMARY KEY ASC,
                symbol TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                description TEXT NOT NULL
            )
        """)
        tx.execute("""
            CREATE TABLE waypoint_trait (
                waypoint_id INTEGER NOT NULL,
                trait_id INTEGER NOT NULL,
                FOREIGN KEY (waypoint_id) REFERENCES waypoint(id),
                FOREIGN KEY (trait_id) REFERENCES waypoint_trait_type(id)
            )
        """)

    async def shutdown(self) -> None:
        self._has_shutdown = True
        await self.cancel_load()

    async def join(self) -> None:
        """Wait for the running load, if any, to finish."""
        task = self._load_task
        if task is not None:
            await asyncio.wait({task})

    # --- Triggers ---

    def _agent_is_current(self, agent: AgentRecord) -> bool:
        return agent.server_reset_id == self._server_reset.current_epoch_id()

    async def _on_selection_change(self, agent: AgentRecord | None, tx: Transaction | None) -> None:
        # Runs inside the selection transaction: only start a load, never wait on one.
        if agent is None or self.loading:
            return
        if not self._agent_is_current(agent):
            logger.info("Not loading star chart for agent %s from an older reset", agent.call_sign)
            return
        await self.start_load(agent.auth_token, agent.server_reset_id)

    async def _on_reset_complete(self, reset: ResetComplete) -> None:
        await self.reset()
        agent = await self._agents.get_selected_agent()
        if agent is not None and self._agent_is_current(agent):
            await self.start_load(agent.auth_token, agent.server_reset_id)

    async def cancel_load(self) -> None:
        """Stop the running load and wait for it to unwind.

        Concurrent callers all wait on the same unwind.
        """
        task = self._load_task
        if task is None or task.done():
            logger.debug("Cancel chart load is a no-op because we aren't loading a chart")
            return
        if self._token.cancelled:
            logger.debug("Waiting on existing cancellation")
        else:
            logger.info("Canceling star chart loading")
            self._token.cancel()
        await asyncio.wait({task})
        logger.debug("Chart load cancellation complete")

    async def reset(self, *, tx: Transaction | None = None) -> None:
        """Cancel any load and delete all chart data.

        Must not be given a `tx` while a load is running, since the load may be
        waiting on the database.
        """
        await self.cancel_load()
        self._metadata_loaded = False
        self._error_message = None

        async def _reset(t: Transaction) -> None:
            logger.info("Resetting star chart tables")
            for table in _CHART_TABLES:
                t.execute(f"DELETE FROM {table}")
            await self._server_reset.mark_component_up_to_date(Component.STAR_CHART, tx=t)
            logger.debug("Star chart tables reset complete")

        await self._db.enqueue(_reset, tx=tx, with_transaction=True)

    async def start_load(self, auth_token: str, epoch_id: int) -> None:
        """Cancel any running load and start a new one in the background.

        Returns once the load has been started, not when it finishes.
        """
        if self._has_shutdown:
            logger.error("Cannot start loading the star chart - component has shut down")
            raise StarChartError("Cannot start loading the star chart - component has shut down")
        current = self._server_reset.current_epoch_id()
        if epoch_id != current:
            logger.error(
                "Cannot start loading the star chart - agent is out-of-date (%d != %d)",
                epoch_id, current,
            )
            raise StarChartError("Cannot start loading the star chart - agent is out-of-date")

        while self.loading:
            await self.cancel_load()

        self._error_message = None
        token = CancellationToken()
        self._token = token
        self._load_task = asyncio.create_task(
            self._run_load(auth_token, token), name="star-chart-load",
        )

    # --- Status and events ---

    def status(self) -> LoadStatus:
        if self._error_message:
            return LoadStatus(error_message=self._error_message)
        if not self._metadata_loaded:
            return LoadStatus(initialized=False)
        return LoadStatus(
            initialized=True,
            total_pages_needed=self._total_pages_needed,
            pages_loaded=self._pages_loaded,
            system_count=self._system_count,
            system_waypoints_loaded=self._system_waypoints_loaded,
        )

    def _send_progress(self) -> None:
        if self._has_shutdown or self._events is None:
            return
        self._events.send(EventType.STAR_CHART_LOAD_PROGRESS, {
            "system_count": self._system_count,
            "total_pages_needed": self._total_pages_needed,
            "pages_loaded": self._pages_loaded,
            "system_waypoints_loaded": self._system_waypoints_loaded,
        })

    def _fail(self, message: str) -> None:
        logger.error("Star chart load failed: %s", message)
        self._error_message = message
        if self._has_shutdown or self._events is None:
            return
        self._events.send(EventType.STAR_CHART_LOAD_ERROR, {"message": message})

    # --- Bulk load ---

    def _stopped(self, token: CancellationToken) -> bool:
        return self._has_shutdown or token.cancelled

    async def _run_load(self, auth_token: str, token: CancellationToken) -> None:
        try:
            await self._load(auth_token, token)
        except LoadError as exc:
            self._fail(str(exc))
        except Exception as exc:
            logger.exception("Uncaught exception in star chart load")
            self._fail(f"Uncaught exception: {exc}")

    async def _load(self, auth_token: str, token: CancellationToken) -> None:
        logger.info("Starting star chart loading")
        await self._load_metadata(auth_token)
        self._send_progress()
        if not await self._load_systems(auth_token, token):
            return
        if not await self._load_all_waypoints(auth_token, token):
            return
        logger.info("All loading complete!")

    async def _load_metadata(self, auth_token: str) -> None:
        logger.debug("Determining system count")
        result = await systems_api.get_systems(
            self._client, auth_token, 1, limit=1, priority=Priority.BULK_LOAD,
        )
        if not result.success:
            raise LoadError(f"Failed to get system count: {result.error_message}")
        payload = result.payload if isinstance(result.payload, dict) else {}
        meta = payload.get("meta")
        system_count = meta.get("total") if isinstance(meta, dict) else None
        if not isinstance(system_count, int) or isinstance(system_count, bool):
            raise LoadError(f"Couldn't get valid system count. Got {json.dumps(system_count)}")
        self._system_count = system_count

        async def _read_progress(tx: Transaction) -> tuple[int, int, int]:
            total_pages = tx.scalar("SELECT COUNT(*) FROM system_load")
            if total_pages < 1:
                logger.debug("No page data found - populating system_load table")
                total_pages = math.ceil(system_count / self.page_size)
                tx.execute("DELETE FROM system_load")
                for page in range(1, total_pages + 1):
                    tx.execute("INSERT INTO system_load (page_id) VALUES (?)", (page,))
                pages_loaded = 0
            else:
                pages_loaded = tx.scalar("SELECT COUNT(*) FROM system_load WHERE loaded != 0")
            waypoints_loaded = tx.scalar("SELECT COUNT(*) FROM waypoint_load WHERE loaded != 0")
            return total_pages, pages_loaded, waypoints_loaded

        (
            self._total_pages_needed,
            self._pages_loaded,
            self._system_waypoints_loaded,
        ) = await self._db.enqueue(_read_progress, with_transaction=True)
        logger.debug(
            "Have already loaded systems from %d out of %d pages and waypoints for %d out of "
            "%d systems",
            self._pages_loaded, self._total_pages_needed,
            self._system_waypoints_loaded, self._system_count,
        )
        self._metadata_loaded = True

    async def _load_systems(self, auth_token: str, token: CancellationToken) -> bool:
        """Phase 1. Returns False if the load was cancelled."""

        async def _next_page(tx: Transaction) -> int | None:
            return tx.scalar(
                "SELECT page_id FROM system_load WHERE loaded = 0 ORDER BY page_id LIMIT 1"
            )

        while True:
            if self._stopped(token):
                return False
            page = await self._db.enqueue(_next_page)
            if page is None:
                if self._pages_loaded != self._total_pages_needed:
                    raise LoadError(
                        f"All system pages loaded, but pages_loaded is {self._pages_loaded} "
                        f"and total_pages_needed is {self._total_pages_needed}"
                    )
                logger.info("All system pages loaded")
                return True
            if self._stopped(token):
                return False

            result = await systems_api.get_systems(
                self._client, auth_token, page, limit=self.page_size, priority=Priority.BULK_LOAD,
            )
            if not result.success:
                raise LoadError(
                    f"Failed to retrieve page {page} of system data: {result.error_message}"
                )
            try:
                systems = PaginatedResponse[System].model_validate(result.payload).data
            except ValidationError as exc:
                raise LoadError(f"Malformed page {page} of system data: {exc}") from exc

            await self._db.enqueue(
                lambda tx: self._store_systems(tx, page, systems), with_transaction=True,
            )
            self._pages_loaded += 1
            logger.debug(
                "Successfully loaded page %d (%d out of %d)",
                page, self._pages_loaded, self._total_pages_needed,
            )
            self._send_progress()

    async def _store_systems(self, tx: Transaction, page: int, systems: list[System]) -> None:
        for system in systems:
            if tx.scalar("SELECT id FROM system WHERE symbol = ?", (system.symbol,)) is not None:
                logger.warning("System %s was listed twice; keeping the first", system.symbol)
                continue
            sector_id = _lookup_id(tx, "sector", system.sector_symbol)
            type_id = _lookup_id(tx, "system_type", system.type)
            system_id = tx.execute(
                "INSERT INTO system (symbol, sector_id, type_id, x, y) VALUES (?, ?, ?, ?, ?)",
                (system.symbol, sector_id, type_id, system.x, system.y),
            ).lastrowid
            tx.execute("INSERT INTO waypoint_load (system_id) VALUES (?)", (system_id,))
        tx.execute("UPDATE system_load SET loaded = 1 WHERE page_id = ?", (page,))

    async def _load_all_waypoints(self, auth_token: str, token: CancellationToken) -> bool:
        """Phase 2. Returns False if the load was cancelled."""

        async def _next_system(tx: Transaction) -> tuple[int, str] | None:
            row = tx.fetchone("""
                SELECT system.id AS id, system.symbol AS symbol
                FROM system
                INNER JOIN waypoint_load ON waypoint_load.system_id = system.id
                WHERE waypoint_load.loaded = 0
                ORDER BY system.id
                LIMIT 1
            """)
            return None if row is None else (row["id"], row["symbol"])

        while True:
            if self._stopped(token):
                return False
            system = await self._db.enqueue(_next_system)
            if system is None:
                if self._system_waypoints_loaded != self._system_count:
                    raise LoadError(
                        f"All waypoints loaded, but system_waypoints_loaded is "
                        f"{self._system_waypoints_loaded} and system_count is {self._system_count}"
                    )
                logger.info("All waypoints loaded")
                return True

            system_id, system_symbol = system
            if not await self._load_system_waypoints(
                auth_token, system_symbol, system_id, Priority.BULK_LOAD, token=token,
            ):
                return False
            logger.debug(
                "Successfully loaded waypoints for system %s (%d out of %d)",
                system_symbol, self._system_waypoints_loaded, self._system_count,
            )
            self._send_progress()

    async def _load_system_waypoints(
        self,
        auth_token: str,
        system_symbol: str,
        system_id: int,
        priority: int,
        *,
        token: CancellationToken | None = None,
        tx: Transaction | None = None,
    ) -> bool:
        """Fetch and store one system's waypoints.

        Returns False if cancelled before finishing. Raises LoadError when a
        request fails.
        """
        waypoints: list[Waypoint] = []
        page = 1
        while True:
            if token is not None and self._stopped(token):
                return False
            result = await systems_api.get_waypoints(
                self._client, auth_token, system_symbol, page,
                limit=self.page_size, priority=priority,
            )
            if not result.success:
                raise LoadError(
                    f"Failed to get waypoints for {system_symbol} (p={page}): "
                    f"{result.error_message}"
                )
            try:
                response = PaginatedResponse[Waypoint].model_validate(result.payload)
            except ValidationError as exc:
                raise LoadError(
                    f"Malformed waypoints for {system_symbol} (p={page}): {exc}"
                ) from exc
            waypoints.extend(response.data)
            if len(waypoints) >= response.meta.total or not response.data:
                break
            page += 1

        stored = await self._db.enqueue(
            lambda t: self._store_waypoints(t, system_id, waypoints),
            tx=tx,
            with_transaction=True,
        )
        if stored:
            self._system_waypoints_loaded += 1
        return True

    async def _store_waypoints(
        self, tx: Transaction, system_id: int, waypoints: list[Waypoint],
    ) -> bool:
        """Persist a system's waypoints. Returns False if another load got there first."""
        if tx.scalar("SELECT loaded FROM waypoint_load WHERE system_id = ?", (system_id,)):
            return False

        ids: dict[str, int] = {}
        for waypoint in waypoints:
            type_id = _lookup_id(tx, "waypoint_type", waypoint.type)
            waypoint_id = tx.execute(
                "INSERT INTO waypoint (system_id, symbol, type_id, x, y) VALUES (?, ?, ?, ?, ?)",
                (system_id, waypoint.symbol, type_id, waypoint.x, waypoint.y),
            ).lastrowid
            ids[waypoint.symbol] = waypoint_id
            for trait in waypoint.traits:
                trait_id = self._trait_id(tx, trait)
                tx.execute(
                    "INSERT INTO waypoint_trait (waypoint_id, trait_id) VALUES (?, ?)",
                    (waypoint_id, trait_id),
                )

        # Orbits can point at any waypoint of the system, so they go in last.
        for waypoint in waypoints:
            for orbital in waypoint.orbitals:
                if orbital.symbol not in ids:
                    logger.warning(
                        "Waypoint %s lists unknown orbital %s", waypoint.symbol, orbital.symbol,
                    )
                    continue
                tx.execute(
                    "INSERT OR REPLACE INTO waypoint_orbit (orbital, orbited) VALUES (?, ?)",
                    (ids[orbital.symbol], ids[waypoint.symbol]),
                )

        tx.execute(
            "INSERT OR REPLACE INTO waypoint_load (system_id, loaded) VALUES (?, 1)", (system_id,),
        )
        return True

    @staticmethod
    def _trait_id(tx: Transaction, trait: WaypointTrait) -> int:
        existing = tx.scalar("SELECT id FROM waypoint_trait_type WHERE symbol = ?", (trait.symbol,))
        if existing is not None:
            return existing
        return tx.execute(
            "INSERT INTO waypoint_trait_type (symbol, name, description) VALUES (?, ?, ?)",
            (trait.symbol, trait.name, trait.description),
        ).lastrowid

    # --- Queries ---

    async def get_system_waypoints(
        self, auth_token: str, system_symbol: str, *, tx: Transaction | None = None,
    ) -> SystemWaypoints:
        """A system and its waypoints, loading them first if needed."""

        async def _find(t: Transaction) -> tuple[ChartSystem, bool]:
            row = t.fetchone(f"{_SELECT_SYSTEM} WHERE system.symbol = ?", (system_symbol,))
            if row is None:
                raise StarChartError(f'Unknown system: "{system_symbol}"')
            loaded = t.scalar("SELECT loaded FROM waypoint_load WHERE system_id = ?", (row["id"],))
            return _chart_system(row), bool(loaded)

        system, loaded = await self._db.enqueue(_find, tx=tx)
        return await self._system_waypoints(auth_token, system, loaded, tx=tx)

    async def get_sibling_waypoints(
        self, auth_token: str, waypoint_symbol: str, *, tx: Transaction | None = None,
    ) -> SystemWaypoints:
        """All waypoints in the same system as `waypoint_symbol`, including itself."""

        async def _find(t: Transaction) -> tuple[ChartSystem, bool]:
            system_id = t.scalar(
                "SELECT system_id FROM waypoint WHERE symbol = ?", (waypoint_symbol,),
            )
            if system_id is not None:
                row = t.fetchone(f"{_SELECT_SYSTEM} WHERE system.id = ?", (system_id,))
                return _chart_system(row), True

            parts = waypoint_symbol.split("-")
            if len(parts) != 3:
                raise StarChartError(
                    f'Waypoint "{waypoint_symbol}" does not have the expected format'
                )
            system_symbol = f"{parts[0]}-{parts[1]}"
            row = t.fetchone(f"{_SELECT_SYSTEM} WHERE system.symbol = ?", (system_symbol,))
            if row is None:
                raise StarChartError(f'Unknown system: "{system_symbol}"')
            loaded = t.scalar("SELECT loaded FROM waypoint_load WHERE system_id = ?", (row["id"],))
            return _chart_system(row), bool(loaded)

        system, loaded = await self._db.enqueue(_find, tx=tx)
        return await self._system_waypoints(auth_token, system, loaded, tx=tx)

    async def _system_waypoints(
        self,
        auth_token: str,
        system: ChartSystem,
        loaded: bool,
        *,
        tx: Transaction | None = None,
    ) -> SystemWaypoints:
        if not loaded:
            try:
                await self._load_system_waypoints(
                    auth_token, system.symbol, system.id, Priority.NORMAL, tx=tx,
                )
            except LoadError as exc:
                raise StarChartError(str(exc)) from exc

        async def _read(t: Transaction) -> SystemWaypoints:
            rows = t.fetchall(
                """
                SELECT waypoint.id AS id, waypoint.symbol AS symbol,
                       waypoint_type.id AS type_id, waypoint_type.symbol AS type_symbol
                FROM waypoint
                INNER JOIN waypoint_type ON waypoint_type.id = waypoint.type_id
                WHERE waypoint.system_id = ?
                ORDER BY waypoint.id ASC
                """,
                (system.id,),
            )
            waypoints: dict[str, ChartWaypoint] = {}
            for row in rows:
                traits = [
                    WaypointTrait(
                        symbol=trait["symbol"],
                        name=trait["name"],
                        description=trait["description"],
                    )
                    for trait in t.fetchall(
                        """
                        SELECT waypoint_trait_type.symbol AS symbol,
                               waypoint_trait_type.name AS name,
                               waypoint_trait_type.description AS description
                        FROM waypoint_trait
                        INNER JOIN waypoint_trait_type
                            ON waypoint_trait.trait_id = waypoint_trait_type.id
                        WHERE waypoint_trait.waypoint_id = ?
                        """,
                        (row["id"],),
                    )
                ]
                orbits = t.scalar(
                    "SELECT waypoint.symbol FROM waypoint_orbit "
                    "INNER JOIN waypoint ON waypoint.id = waypoint_orbit.orbited "
                    "WHERE waypoint_orbit.orbital = ?",
                    (row["id"],),
                )
                orbitals = [
                    orbital["symbol"] for orbital in t.fetchall(
                        "SELECT waypoint.symbol AS symbol FROM waypoint_orbit "
                        "INNER JOIN waypoint ON waypoint.id = waypoint_orbit.orbital "
                        "WHERE waypoint_orbit.orbited = ? ORDER BY waypoint.id ASC",
                        (row["id"],),
                    )
                ]
                waypoints[row["symbol"]] = ChartWaypoint(
                    id=row["id"],
                    symbol=row["symbol"],
                    type=SymbolRef(id=row["type_id"], symbol=row["type_symbol"]),
                    traits=traits,
                    orbits=orbits,
                    orbitals=orbitals,
                )
            return SystemWaypoints(system=system, waypoints=waypoints)

        return await self._db.enqueue(_read, tx=tx, with_transaction=True)

    async def get_local_systems(
        self,
        min_x: int,
        max_x: int,
        min_y: int,
        max_y: int,
        *,
        tx: Transaction | None = None,
    ) -> dict[str, ChartSystem]:
        """Every stored system inside the rectangle, keyed by symbol."""

        async def _query(t: Transaction) -> dict[str, ChartSystem]:
            rows = t.fetchall(
                f"{_SELECT_SYSTEM} WHERE system.x BETWEEN ? AND ? AND system.y BETWEEN ? AND ?",
                (min_x, max_x, min_y, max_y),
            )
            return {row["symbol"]: _chart_system(row) for row in rows}

        return await self._db.enqueue(_query, tx=tx)
