"""WebSocket fan-out of run events."""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket

from ..core.logging import get_logger
from ..models.core import RunEvent

logger = get_logger(__name__)


class EventConnection:
    """A WebSocket subscribed to one editor session's run events."""

    def __init__(self, websocket: WebSocket, session_id: str, max_queue: int = 1000):
        self.websocket = websocket
        self.session_id = session_id
        self.connection_id = str(uuid.uuid4())
        self.connected_at = datetime.utcnow()
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.dropped = 0


class EventStreamManager:
    """
    Tracks WebSocket connections per editor session.

    ``publish`` is called synchronously from controller listeners on the
    event loop thread; it only enqueues. Each connection drains its own
    queue in the endpoint coroutine.
    """

    def __init__(self):
        self._connections: Dict[str, EventConnection] = {}
        self._session_connections: Dict[str, Set[str]] = {}

    async def connect(self, websocket: WebSocket, session_id: str) -> EventConnection:
        await websocket.accept()
        connection = EventConnection(websocket, session_id)
        self._connections[connection.connection_id] = connection
        self._session_connections.setdefault(session_id, set()).add(connection.connection_id)

        logger.info(f"Event stream connected: {connection.connection_id} (session {session_id})")
        await websocket.send_json({
            "type": "connection_established",
            "connection_id": connection.connection_id,
            "session_id": session_id,
            "timestamp": datetime.utcnow().isoformat(),
        })
        return connection

    def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        subscribers = self._session_connections.get(connection.session_id)
        if subscribers is not None:
            subscribers.discard(connection_id)
            if not subscribers:
                del self._session_connections[connection.session_id]
        logger.info(f"Event stream disconnected: {connection_id}")

    def publish(self, session_id: str, event: RunEvent) -> None:
        message = event.model_dump(mode="json")
        for connection_id in list(self._session_connections.get(session_id, ())):
            connection = self._connections.get(connection_id)
            if connection is None:
                continue
            try:
                connection.queue.put_nowait(message)
            except asyncio.QueueFull:
                connection.dropped += 1
                logger.warning(f"Event queue full for connection {connection_id}, dropping {event.type.value}")

    def close_session(self, session_id: str) -> None:
        for connection_id in list(self._session_connections.get(session_id, ())):
            connection = self._connections.get(connection_id)
            if connection is None:
                continue
            while connection.queue.full():
                connection.queue.get_nowait()
            connection.queue.put_nowait(None)

    async def next_message(self, connection: EventConnection) -> Optional[Dict[str, Any]]:
        """Next event for the connection, or None when its session closed."""
        return await connection.queue.get()

    def get_connection_info(self) -> Dict[str, Any]:
        return {
            "active_connections": len(self._connections),
            "sessions": {sid: len(ids) for sid, ids in self._session_connections.items()},
        }
