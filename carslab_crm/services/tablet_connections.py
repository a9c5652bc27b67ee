"""
Registry of open tablet websockets.

Services publish from worker threads while every socket belongs to the event
loop that accepted it, so messages are handed over with
``asyncio.run_coroutine_threadsafe`` and never awaited by the caller.
"""

from __future__ import annotations

import asyncio
import threading
from collections import defaultdict
from concurrent.futures import Future
from typing import Any, DefaultDict, List, Tuple
from uuid import UUID

from starlette.websockets import WebSocket

from carslab_crm.core.logging_setup import logger

_Connection = Tuple[WebSocket, asyncio.AbstractEventLoop]


class TabletConnectionManager:
    def __init__(self) -> None:
        self._connections: DefaultDict[UUID, List[_Connection]] = defaultdict(list)
        self._lock = threading.Lock()

    def connect(self, tablet_id: UUID, websocket: WebSocket) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            self._connections[tablet_id].append((websocket, loop))
        logger.info("Tablet %s connected over websocket", tablet_id)

    def disconnect(self, tablet_id: UUID, websocket: WebSocket) -> None:
        with self._lock:
            remaining = [conn for conn in self._connections.get(tablet_id, []) if conn[0] is not websocket]
            if remaining:
                self._connections[tablet_id] = remaining
            else:
                self._connections.pop(tablet_id, None)
        logger.info("Tablet %s websocket closed", tablet_id)

    def is_connected(self, tablet_id: UUID) -> bool:
        with self._lock:
            return bool(self._connections.get(tablet_id))

    def notify(self, tablet_id: UUID, message: dict[str, Any]) -> int:
        """Queue ``message`` on every socket of the tablet; returns how many were queued."""
        with self._lock:
            connections = list(self._connections.get(tablet_id, []))
        if not connections:
            logger.debug("Tablet %s has no open websocket, %s not pushed", tablet_id, message.get("type"))
            return 0

        queued = 0
        for websocket, loop in connections:
            if loop.is_closed():
                continue
            future = asyncio.run_coroutine_threadsafe(websocket.send_json(message), loop)
            future.add_done_callback(_log_failure(tablet_id, message.get("type")))
            queued += 1
        return queued

    def clear(self) -> None:
        with self._lock:
            self._connections.clear()


def _log_failure(tablet_id: UUID, message_type: str | None):
    def callback(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Could not push %s to tablet %s: %s", message_type, tablet_id, exc)

    return callback


def websocket_message(message_type: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"type": message_type, "payload": payload or {}}


tablet_connections = TabletConnectionManager()
