"""Live event stream: every server event is pushed to each connected client."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket

from spiff.events import EventHub, ServerEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/server", tags=["events"])


async def _send_events(websocket: WebSocket, queue: asyncio.Queue[ServerEvent]) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json(event.to_message())


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Clients don't send anything; this only watches for the close.
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def _pump(websocket: WebSocket, queue: asyncio.Queue[ServerEvent]) -> None:
    sender = asyncio.create_task(_send_events(websocket, queue))
    watcher = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        done, _ = await asyncio.wait({sender, watcher}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.info("Event stream closed: %s", task.exception())
    finally:
        sender.cancel()
        watcher.cancel()
        await asyncio.gather(sender, watcher, return_exceptions=True)


@router.websocket("/events")
async def event_stream(websocket: WebSocket) -> None:
    hub: EventHub = websocket.app.state.events
    # Subscribe first so nothing sent after the handshake is missed.
    queue = hub.subscribe()
    try:
        await websocket.accept()
        logger.info("Event client connected (%d total)", hub.subscriber_count)
        await _pump(websocket, queue)
    finally:
        hub.unsubscribe(queue)
        logger.info("Event client disconnected (%d remaining)", hub.subscriber_count)
