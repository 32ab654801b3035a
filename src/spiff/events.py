"""Server events: pushed to every connected UI client."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Events the server broadcasts over the live event stream."""

    STAR_CHART_LOAD_PROGRESS = "star_chart_load_progress"
    STAR_CHART_LOAD_ERROR = "star_chart_load_error"
    SERVER_RESET = "server_reset"


@dataclass(frozen=True)
class ServerEvent:
    """A single broadcast event."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        return {"event": self.type.value, "data": self.data}

    def __str__(self) -> str:
        return f"{self.type.value}({self.data})"


class EventHub:
    """Fan-out of server events to per-subscriber queues."""

    def __init__(self) -> None:
        self._subscribers: set[asyncio.Queue[ServerEvent]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[ServerEvent]:
        queue: asyncio.Queue[ServerEvent] = asyncio.Queue()
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ServerEvent]) -> None:
        self._subscribers.discard(queue)

    def send(self, event_type: EventType, data: dict[str, Any] | None = None) -> ServerEvent:
        """Push an event onto every subscriber's queue."""
        event = ServerEvent(type=event_type, data=data or {})
        logger.debug("Emitting event %s to %d subscribers", event, len(self._subscribers))
        for queue in self._subscribers:
            queue.put_nowait(event)
        return event
