"""Server reset tracking.

The SpaceTraders server is wiped periodically, which invalidates every agent
token issued before the wipe. Each reset period gets a local id (its epoch),
starting at 1 and incremented every time the server's reported `resetDate`
changes.

The tracker polls the server status only inside an "early window" before the
predicted reset. While the reset is underway the server doesn't answer, so the
first failed poll is reported as the beginning of a reset; the changed
`resetDate` on a later successful poll completes it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from pydantic import ValidationError

from spiff.api import status as status_api
from spiff.client import ApiClient
from spiff.clock import Clock, SystemClock, TimerHandle
from spiff.db import Database, MetaInt, Transaction
from spiff.events import EventHub, EventType
from spiff.models import ServerStatus

logger = logging.getLogger(__name__)

SERVER_RESET_DB_VERSION = 1
FIRST_EPOCH_ID = 1


class ServerResetError(Exception):
    """Raised when the tracker can't establish the current reset period."""


class Component(Enum):
    """Components whose cached data is tied to an epoch. Values are storage keys."""

    STAR_CHART = 1


class TrackerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    POLLING_IDLE = "polling_idle"
    POLLING_ACTIVE = "polling_active"
    RESET_IN_PROGRESS = "reset_in_progress"


@dataclass(frozen=True)
class ResetComplete:
    previous_epoch_id: int
    epoch_id: int

    def to_dict(self) -> dict[str, int]:
        return {"previous_epoch_id": self.previous_epoch_id, "epoch_id": self.epoch_id}


BeginResetListener = Callable[[], Awaitable[None]]
CompleteResetListener = Callable[[ResetComplete], Awaitable[None]]


class ServerResetTracker:
    """Owns the epoch history and notifies listeners when the server resets."""

    def __init__(
        self,
        db: Database,
        client: ApiClient,
        *,
        events: EventHub | None = None,
        clock: Clock | None = None,
        poll_interval: float = 60.0,
        early_window: float = 3600.0,
    ) -> None:
        self._db = db
        self._client = client
        self._events = events
        self._clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self.early_window = early_window
        self._epoch_id: int | None = None
        self._last_reset: str | None = None
        self._next_reset: float | None = None
        self._next_poll_time: float | None = None
        self._state = TrackerState.UNINITIALIZED
        self._timer: TimerHandle | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._begin_listeners: list[BeginResetListener] = []
        self._complete_listeners: list[CompleteResetListener] = []

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def next_poll_time(self) -> float | None:
        return self._next_poll_time

    def current_epoch_id(self) -> int:
        if self._epoch_id is None:
            raise ServerResetError("Server reset tracker has not been initialized")
        return self._epoch_id

    def on_begin_reset(self, listener: BeginResetListener) -> None:
        self._begin_listeners.append(listener)

    def on_complete_reset(self, listener: CompleteResetListener) -> None:
        self._complete_listeners.append(listener)

    # --- Lifecycle ---

    async def init(self) -> None:
        """Fetch the server status, record the current epoch and start polling."""
        status = await self._fetch_status()
        if status is None:
            raise ServerResetError("Failed to get server metadata")

        async def _init(tx: Transaction) -> tuple[int, ResetComplete | None]:
            version = await self._db.module_version(
                MetaInt.SERVER_RESET_VERSION, SERVER_RESET_DB_VERSION, tx=tx,
            )
            if version < SERVER_RESET_DB_VERSION:
                if version < 1:
                    tx.execute("""
                        CREATE TABLE server_reset (
                            id INTEGER PRIMARY KEY ASC,
                            last_reset TEXT NOT NULL,
                            next_reset TEXT
                        )
                    """)
                    tx.execute("""
                        CREATE TABLE component_server_reset (
                            component INTEGER PRIMARY KEY ASC,
                            server_reset_id INTEGER NOT NULL,
                            FOREIGN KEY (server_reset_id) REFERENCES server_reset(id)
                        )
                    """)
                await self._db.set_meta_int(
                    MetaInt.SERVER_RESET_VERSION, SERVER_RESET_DB_VERSION, tx=tx,
                )

            current = tx.scalar("SELECT MAX(id) FROM server_reset")
            if current is None:
                self._insert_epoch(tx, FIRST_EPOCH_ID, status)
                return FIRST_EPOCH_ID, None
            last_reset = tx.scalar("SELECT last_reset FROM server_reset WHERE id = ?", (current,))
            if last_reset != status.reset_date:
                logger.info("Server reset since last run")
                self._insert_epoch(tx, current + 1, status)
                return current + 1, ResetComplete(previous_epoch_id=current, epoch_id=current + 1)
            return current, None

        epoch_id, startup_reset = await self._db.enqueue(_init, with_transaction=True)
        self._adopt_epoch(epoch_id, status)
        logger.info("Current server reset epoch: %d", self._epoch_id)

        self._enter_polling(self._clock.now())

        if startup_reset is not None:
            # Resets that happened while we were down only get "complete" notifications.
            await self._fire_complete(startup_reset)

    async def shutdown(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._poll_task is not None:
            await asyncio.wait({self._poll_task})
            self._poll_task = None

    # --- Component epoch marks ---

    async def is_component_up_to_date(
        self, component: Component, *, tx: Transaction | None = None,
    ) -> bool:
        """Whether the component's cached data belongs to the current epoch."""
        epoch_id = self.current_epoch_id()

        async def _check(t: Transaction) -> bool:
            marked = t.scalar(
                "SELECT server_reset_id FROM component_server_reset WHERE component = ?",
                (component.value,),
            )
            return marked == epoch_id

        return await self._db.enqueue(_check, tx=tx)

    async def mark_component_up_to_date(
        self, component: Component, *, tx: Transaction | None = None,
    ) -> None:
        epoch_id = self.current_epoch_id()

        async def _mark(t: Transaction) -> None:
            t.execute(
                "INSERT OR REPLACE INTO component_server_reset (component, server_reset_id) "
                "VALUES (?, ?)",
                (component.value, epoch_id),
            )

        await self._db.enqueue(_mark, tx=tx)

    # --- Polling ---

    async def poll(self) -> None:
        """Fetch the server status once and react to what it says."""
        status = await self._fetch_status()
        now = self._clock.now()

        if status is None:
            # The server is unreachable while it resets itself.
            if self._state is not TrackerState.RESET_IN_PROGRESS:
                logger.info("Server unreachable near reset time; assuming reset has begun")
                self._state = TrackerState.RESET_IN_PROGRESS
                await self._fire_begin()
            self._schedule_poll(now + self.poll_interval)
            return

        if status.reset_date == self._last_reset:
            if self._state is TrackerState.RESET_IN_PROGRESS:
                logger.info("Server reachable again without having reset")
            self._remember_next_reset(status)
            self._enter_polling(now)
            return

        previous_epoch_id = self.current_epoch_id()
        epoch_id = previous_epoch_id + 1

        async def _record(tx: Transaction) -> None:
            self._insert_epoch(tx, epoch_id, status)

        await self._db.enqueue(_record, with_transaction=True)
        self._adopt_epoch(epoch_id, status)
        logger.info("Server reset detected: epoch %d -> %d", previous_epoch_id, epoch_id)
        self._enter_polling(now)

        reset = ResetComplete(previous_epoch_id=previous_epoch_id, epoch_id=epoch_id)
        await self._fire_complete(reset)
        if self._events is not None:
            self._events.send(EventType.SERVER_RESET, reset.to_dict())

    def _poll_time_after(self, now: float) -> float:
        """Next poll time: one interval from now, or the early window start if later."""
        poll_time = now + self.poll_interval
        if self._next_reset is not None:
            poll_time = max(poll_time, self._next_reset - self.early_window)
        return poll_time

    def _enter_polling(self, now: float) -> None:
        poll_time = self._poll_time_after(now)
        self._state = (
            TrackerState.POLLING_ACTIVE if poll_time <= now + self.poll_interval
            else TrackerState.POLLING_IDLE
        )
        self._schedule_poll(poll_time)

    def _schedule_poll(self, poll_time: float) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._next_poll_time = poll_time
        delay = max(0.0, poll_time - self._clock.now())
        logger.debug("Next server status poll in %.0fs", delay)
        self._timer = self._clock.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self._next_poll_time is not None and self._clock.now() < self._next_poll_time:
            # Fired early (clock drift); try again at the intended time.
            self._schedule_poll(self._next_poll_time)
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.create_task(self._poll_safely(), name="server-reset-poll")

    async def _poll_safely(self) -> None:
        try:
            await self.poll()
        except Exception:
            logger.exception("Server reset poll failed")
            self._schedule_poll(self._clock.now() + self.poll_interval)

    # --- Helpers ---

    async def _fetch_status(self) -> ServerStatus | None:
        result = await status_api.get_status(self._client)
        if not result.success:
            logger.warning("Failed to get server status: %s", result.error_message)
            return None
        try:
            return ServerStatus.model_validate(result.payload)
        except ValidationError as exc:
            logger.warning("Unexpected server status payload: %s", exc)
            return None

    def _insert_epoch(self, tx: Transaction, epoch_id: int, status: ServerStatus) -> None:
        next_reset = status.server_resets.next
        tx.execute(
            "INSERT INTO server_reset (id, last_reset, next_reset) VALUES (?, ?, ?)",
            (epoch_id, status.reset_date, next_reset.isoformat() if next_reset else None),
        )

    def _adopt_epoch(self, epoch_id: int, status: ServerStatus) -> None:
        self._epoch_id = epoch_id
        self._last_reset = status.reset_date
        self._remember_next_reset(status)

    def _remember_next_reset(self, status: ServerStatus) -> None:
        next_reset = status.server_resets.next
        self._next_reset = next_reset.timestamp() if next_reset else None

    async def _fire_begin(self) -> None:
        for listener in self._begin_listeners:
            try:
                await listener()
            except Exception:
                logger.exception("Begin-reset listener failed")

    async def _fire_complete(self, reset: ResetComplete) -> None:
        for listener in self._complete_listeners:
            try:
                await listener(reset)
            except Exception:
                logger.exception("Complete-reset listener failed")
