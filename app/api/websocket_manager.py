"""
WebSocket Connection Manager for the realtime gateway.

Tracks active connections per user, the chat rooms each connection has
joined, and heartbeat timestamps. All state is in-memory and per process;
room membership is discarded when a connection goes away.
"""
import logging
import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Set
from collections import defaultdict
from fastapi import WebSocket
from datetime import datetime, timedelta

from api.metrics import (
    websocket_connections_total, websocket_disconnections_total,
    websocket_messages_sent_total, update_websocket_metrics
)

logger = logging.getLogger(__name__)

OfflineCallback = Callable[[int], Awaitable[None]]


class ConnectionManager:
    """
    Manages active WebSocket connections.

    Features:
    - Tracks connections per user (multiple devices/tabs supported)
    - Tracks joined chat rooms per connection
    - Enforces connection limits per user (max 5 concurrent)
    - Reports when a user's last connection goes away (presence offline)
    """

    MAX_CONNECTIONS_PER_USER = 5

    def __init__(self):
        """Initialize connection manager with empty connection tracking."""
        # {user_id: List[WebSocket]} - tracks all connections per user
        self.active_connections: Dict[int, List[WebSocket]] = defaultdict(list)

        # {WebSocket: user_id} - reverse lookup for user by connection
        self.connection_to_user: Dict[WebSocket, int] = {}

        # {WebSocket: Set[chat_id]} - rooms joined by each connection
        self.connection_rooms: Dict[WebSocket, Set[int]] = defaultdict(set)

        # {WebSocket: datetime} - tracks last heartbeat received
        self.last_heartbeat: Dict[WebSocket, datetime] = {}

        # Awaited with the user id once that user has no connection left
        self.on_user_offline: Optional[OfflineCallback] = None

        logger.info("ConnectionManager initialized")

    async def connect(self, websocket: WebSocket, user_id: int) -> bool:
        """
        Accept a new WebSocket connection for a user.

        Args:
            websocket: WebSocket connection to accept
            user_id: ID of the authenticated user

        Returns:
            True if connection accepted, False if the per-user limit is reached
        """
        current_connections = len(self.active_connections.get(user_id, []))
        if current_connections >= self.MAX_CONNECTIONS_PER_USER:
            logger.warning(
                f"Connection limit reached for user {user_id}: "
                f"{current_connections}/{self.MAX_CONNECTIONS_PER_USER}"
            )
            return False

        await websocket.accept()

        self.active_connections[user_id].append(websocket)
        self.connection_to_user[websocket] = user_id
        self.last_heartbeat[websocket] = datetime.utcnow()

        websocket_connections_total.labels(instance="api").inc()

        logger.info(
            f"User {user_id} connected via WebSocket "
            f"(total connections: {len(self.active_connections[user_id])})"
        )
        return True

    def disconnect(self, websocket: WebSocket, reason: str = "normal") -> Optional[int]:
        """
        Remove a WebSocket connection and clean up tracking.

        Safe to call more than once for the same connection.

        Args:
            websocket: WebSocket connection to remove
            reason: Disconnection reason label for metrics

        Returns:
            The user id if this was the user's last connection, else None
        """
        user_id = self.connection_to_user.pop(websocket, None)
        if user_id is None:
            return None

        connections = self.active_connections.get(user_id, [])
        if websocket in connections:
            connections.remove(websocket)

        self.connection_rooms.pop(websocket, None)
        self.last_heartbeat.pop(websocket, None)

        websocket_disconnections_total.labels(instance="api", reason=reason).inc()

        remaining = len(connections)
        logger.info(
            f"User {user_id} disconnected from WebSocket "
            f"(remaining connections: {remaining})"
        )

        if remaining == 0:
            self.active_connections.pop(user_id, None)
            return user_id
        return None

    async def drop(self, websocket: WebSocket, reason: str = "normal") -> None:
        """Disconnect and run the offline callback if the user has no connection left."""
        offline_user_id = self.disconnect(websocket, reason)
        if offline_user_id is not None and self.on_user_offline is not None:
            try:
                await self.on_user_offline(offline_user_id)
            except Exception as e:
                logger.error(f"Offline handling failed for user {offline_user_id}: {e}", exc_info=True)

    def join_room(self, websocket: WebSocket, chat_id: int):
        """
        Add a connection to a chat room.

        Args:
            websocket: WebSocket connection
            chat_id: ID of the chat whose room to join
        """
        self.connection_rooms[websocket].add(chat_id)
        user_id = self.connection_to_user.get(websocket)
        logger.debug(f"User {user_id} joined room {chat_id}")

    def leave_room(self, websocket: WebSocket, chat_id: int):
        if websocket in self.connection_rooms:
            self.connection_rooms[websocket].discard(chat_id)
            user_id = self.connection_to_user.get(websocket)
            logger.debug(f"User {user_id} left room {chat_id}")

    def is_in_room(self, websocket: WebSocket, chat_id: int) -> bool:
        return chat_id in self.connection_rooms.get(websocket, set())

    async def _send(self, connection: WebSocket, message: dict) -> bool:
        try:
            await connection.send_json(message)
            websocket_messages_sent_total.labels(
                message_type=message.get("type", "unknown"),
                instance="api"
            ).inc()
            return True
        except Exception as e:
            user_id = self.connection_to_user.get(connection)
            logger.error(f"Error sending {message.get('type', 'unknown')} to user {user_id}: {e}")
            return False

    async def _send_many(self, connections: List[WebSocket], message: dict) -> int:
        sent_count = 0
        stale_connections = []
        for connection in connections:
            if await self._send(connection, message):
                sent_count += 1
            else:
                stale_connections.append(connection)

        for connection in stale_connections:
            await self.drop(connection, reason="error")
        return sent_count

    async def send_to_user(self, user_id: int, message: dict) -> int:
        """
        Send a message to all connections for a specific user.

        Args:
            user_id: ID of user to send message to
            message: Message dict to send (will be JSON-encoded)

        Returns:
            Number of connections the message reached
        """
        connections = list(self.active_connections.get(user_id, []))
        if not connections:
            logger.debug(f"No active connections for user {user_id}")
            return 0
        return await self._send_many(connections, message)

    async def send_to_room(self, chat_id: int, message: dict, exclude: Optional[WebSocket] = None) -> int:
        """
        Send a message to every connection that joined a chat room.

        The sender's own connections are included unless one is passed as
        ``exclude`` (typing indicators).

        Args:
            chat_id: Room to broadcast to
            message: Message dict to send (will be JSON-encoded)
            exclude: Optional connection to skip

        Returns:
            Number of connections the message reached
        """
        targets = [
            connection for connection, rooms in list(self.connection_rooms.items())
            if chat_id in rooms and connection is not exclude
        ]
        sent_count = await self._send_many(targets, message)
        if sent_count > 0:
            logger.info(f"Broadcast {message.get('type')} to room {chat_id}: {sent_count} connections")
        return sent_count

    async def broadcast(self, message: dict, exclude: Optional[WebSocket] = None) -> int:
        """Send a message to every open connection."""
        targets = [
            connection for connection in list(self.connection_to_user)
            if connection is not exclude
        ]
        return await self._send_many(targets, message)

    async def update_heartbeat(self, websocket: WebSocket):
        """
        Update last heartbeat timestamp for a connection.

        Called when a pong is received in response to a ping.
        """
        self.last_heartbeat[websocket] = datetime.utcnow()
        user_id = self.connection_to_user.get(websocket)
        logger.debug(f"Heartbeat updated for user {user_id}")

    def get_stale_connections(self, timeout_seconds: int = 40) -> List[WebSocket]:
        """
        Find connections that haven't sent a heartbeat recently.

        Args:
            timeout_seconds: Seconds since last heartbeat to consider stale (default: 40s)

        Returns:
            List of stale WebSocket connections
        """
        now = datetime.utcnow()
        timeout_delta = timedelta(seconds=timeout_seconds)
        return [
            connection for connection, last_beat in self.last_heartbeat.items()
            if now - last_beat > timeout_delta
        ]

    def get_connection_count(self) -> int:
        """Total number of active connections across all users."""
        return sum(len(connections) for connections in self.active_connections.values())

    def get_user_count(self) -> int:
        """Number of unique users currently connected."""
        return len(self.active_connections)

    def is_user_connected(self, user_id: int) -> bool:
        return bool(self.active_connections.get(user_id))


# Global connection manager instance
connection_manager = ConnectionManager()


async def run_heartbeat_cycle(manager: ConnectionManager, timeout_seconds: int = 40) -> int:
    """
    Ping every connection and close the ones silent for timeout_seconds.

    Returns:
        Number of stale connections closed
    """
    ping_message = {"type": "ping", "timestamp": datetime.utcnow().isoformat()}
    await manager.broadcast(ping_message)

    stale_connections = manager.get_stale_connections(timeout_seconds)
    for connection in stale_connections:
        user_id = manager.connection_to_user.get(connection)
        logger.warning(f"Closing stale connection for user {user_id}")
        try:
            await connection.close(code=1001, reason="Connection timeout")
        except Exception as e:
            logger.debug(f"Close of stale connection failed: {e}")
        await manager.drop(connection, reason="timeout")

    update_websocket_metrics(manager)
    return len(stale_connections)


async def heartbeat_monitor(interval_seconds: int = 30, timeout_seconds: int = 40):
    """
    Background task to send heartbeat pings and detect stale connections.

    Sends ping every 30 seconds and closes connections that haven't
    answered with a pong in 40 seconds.

    Args:
        interval_seconds: Seconds between ping messages (default: 30)
        timeout_seconds: Seconds without heartbeat before closing (default: 40)
    """
    logger.info(f"Heartbeat monitor started (interval={interval_seconds}s, timeout={timeout_seconds}s)")

    while True:
        await asyncio.sleep(interval_seconds)

        try:
            closed = await run_heartbeat_cycle(connection_manager, timeout_seconds)
            logger.info(
                f"Heartbeat complete: {connection_manager.get_connection_count()} connections, "
                f"{connection_manager.get_user_count()} users, {closed} closed"
            )
        except Exception as e:
            logger.error(f"Error in heartbeat monitor: {e}", exc_info=True)
