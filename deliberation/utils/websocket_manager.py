from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass
class ConnectionInfo:
    """Metadata describing a single live session connection."""

    id: str
    websocket: WebSocket
    user_id: Optional[str] = None

    async def send_json(self, message: Dict[str, Any]) -> None:
        """Proxy to the underlying WebSocket send_json method."""
        await self.websocket.send_json(message)


class WebSocketManager:
    """Registry of live connections per deliberation session (presence)."""

    def __init__(self):
        # Key: session_id, Value: {connection_id: ConnectionInfo}
        self.active_connections: Dict[str, Dict[str, ConnectionInfo]] = {}

    async def connect(
        self,
        websocket: WebSocket,
        session_id: str,
        *,
        user_id: Optional[str] = None,
    ) -> str:
        """Accept a WebSocket for a session and return its connection id."""
        await websocket.accept()
        connection_id = str(uuid4())
        self.register(session_id, ConnectionInfo(connection_id, websocket, user_id))
        return connection_id

    def register(self, session_id: str, connection: ConnectionInfo) -> None:
        session_connections = self.active_connections.setdefault(session_id, {})
        session_connections[connection.id] = connection
        logger.debug(
            "WebSocket connected: session_id=%s connection_id=%s user_id=%s",
            session_id,
            connection.id,
            connection.user_id,
        )

    def disconnect(self, session_id: str, connection_id: str) -> None:
        """Remove a connection; the session entry goes once it is empty."""
        session_connections = self.active_connections.get(session_id)
        if not session_connections:
            return

        if session_connections.pop(connection_id, None) is not None:
            logger.debug(
                "WebSocket disconnected: session_id=%s connection_id=%s",
                session_id,
                connection_id,
            )

        if not session_connections:
            self.active_connections.pop(session_id, None)

    async def broadcast(
        self,
        session_id: str,
        message: Dict[str, Any],
        *,
        skip_connection: Optional[str] = None,
    ) -> None:
        """Send a message to every connection of a session."""
        session_connections = self.active_connections.get(session_id, {})
        disconnected: list[str] = []

        # Iterate over a snapshot; disconnect() may run from other handlers.
        for connection_id, connection in list(session_connections.items()):
            if skip_connection and connection_id == skip_connection:
                continue
            try:
                await connection.send_json(message)
            except Exception:  # pragma: no cover - depends on network
                disconnected.append(connection_id)

        for connection_id in disconnected:
            self.disconnect(session_id, connection_id)

    async def send_personal_message(
        self,
        session_id: str,
        connection_id: str,
        message: Dict[str, Any],
    ) -> bool:
        """Send to one connection; returns False if it is gone or failed."""
        connection = self.active_connections.get(session_id, {}).get(connection_id)
        if not connection:
            return False
        try:
            await connection.send_json(message)
        except Exception:  # pragma: no cover - depends on network
            self.disconnect(session_id, connection_id)
            return False
        return True

    def connection_count(self, session_id: str) -> int:
        return len(self.active_connections.get(session_id, {}))


# Create a singleton instance
websocket_manager = WebSocketManager()
