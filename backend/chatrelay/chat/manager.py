"""WebSocket connection lifecycle manager for the chat relay.

This module accepts connections, tracks them by connection id, keeps the
presence registry and room membership up to date, and delivers outbound
events to live sockets.

Key features:
    - One Connection per socket, identified by a fresh UUID (never reused)
    - Presence registration on connect, compare-and-remove on disconnect
    - Presence-change broadcast to every connection
    - Concurrent fan-out with asyncio.gather()
    - Anonymous connections (no username) are accepted but never enter presence

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.

Shared State:
    The presence registry and room membership are mutated only here. The
    message relay reads them but never writes.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .presence import PresenceRegistry
from .rooms import RoomMembership
from .schemas import ConnectedEvent, PresenceChanged, PresenceStatus, RoomJoined, to_wire

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Connection:
    """One live transport session.

    Attributes:
        websocket: The underlying socket (anything with an async ``send_json``).
        username: Handshake username, fixed for the connection's lifetime.
            None for anonymous connections.
        id: Opaque connection identifier.
        current_room: Room the connection is joined to, if any.
    """
    websocket: Any
    username: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    current_room: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return not self.username


class ConnectionManager:
    """Owns live connections and drives their lifecycle.

    Attributes:
        presence: Username -> connection id registry.
        rooms: Connection -> room membership.
        active_connections: Connection id -> Connection for every open socket.
    """

    def __init__(self, presence: PresenceRegistry, rooms: RoomMembership) -> None:
        self.presence = presence
        self.rooms = rooms
        self.active_connections: Dict[str, Connection] = {}

    async def connect(self, websocket: Any, username: Optional[str]) -> Connection:
        """Accept a socket, greet it, and announce the user as online.

        The new socket receives ``connected`` first, then the
        ``presenceChanged`` broadcast that includes itself.

        Args:
            websocket: The WebSocket connection to accept.
            username: Handshake username; empty or None means anonymous.

        Returns:
            The registered Connection.
        """
        await websocket.accept()
        connection = Connection(websocket=websocket, username=username or None)

        online = set(self.presence.online_usernames())
        if connection.username:
            online.add(connection.username)
        await self._safe_send(connection, to_wire(ConnectedEvent(
            connectionId=connection.id,
            username=connection.username,
            onlineUsers=sorted(online),
        )))
        await self.on_connect(connection)
        return connection

    async def on_connect(self, connection: Connection) -> None:
        """Register presence for a connection and broadcast it as online.

        A reconnecting user overwrites the previous entry. Anonymous
        connections are tracked for delivery but excluded from presence.
        """
        self.active_connections[connection.id] = connection
        if connection.is_anonymous:
            logger.info("[WS] Anonymous connection %s accepted (no presence)", connection.id)
            return

        self.presence.set(connection.username, connection.id)
        logger.info("[WS] User connected: %s (%s)", connection.username, connection.id)
        await self.broadcast_all(to_wire(PresenceChanged(
            username=connection.username, status=PresenceStatus.ONLINE
        )))

    async def on_join_room(self, connection: Connection, room_id: str) -> None:
        """Set the connection's current room. Rooms need no prior creation."""
        previous = self.rooms.join(connection.id, room_id)
        connection.current_room = room_id
        if previous:
            logger.info("[WS] %s left room %s", connection.username or connection.id, previous)
        logger.info("[WS] %s joined room %s", connection.username or connection.id, room_id)
        await self._safe_send(connection, to_wire(RoomJoined(roomId=room_id)))

    async def on_disconnect(self, connection: Connection) -> bool:
        """Tear down a connection.

        Presence is removed only if the registry still maps the username to
        this connection, so a late disconnect of an old session leaves a newer
        reconnect online. The offline broadcast is sent only in that case.

        Returns:
            True if the user went offline.
        """
        self.active_connections.pop(connection.id, None)
        self.rooms.leave(connection.id)
        connection.current_room = None

        if connection.is_anonymous:
            logger.info("[WS] Anonymous connection %s closed", connection.id)
            return False

        if not self.presence.remove(connection.username, connection.id):
            logger.info(
                "[WS] Stale disconnect for %s (%s); newer session still online",
                connection.username,
                connection.id,
            )
            return False

        logger.info("[WS] User disconnected: %s (%s)", connection.username, connection.id)
        await self.broadcast_all(to_wire(PresenceChanged(
            username=connection.username, status=PresenceStatus.OFFLINE
        )))
        return True

    # =========================================================================
    # Delivery
    # =========================================================================

    async def send_to(self, connection_id: str, message: dict) -> bool:
        """Send to one connection by id. Returns False if it is gone or the send failed."""
        connection = self.active_connections.get(connection_id)
        if connection is None:
            return False
        return await self._safe_send(connection, message)

    async def send_many(self, connection_ids: Iterable[str], message: dict) -> List[str]:
        """Send to several connections concurrently.

        Returns:
            Ids of the connections the message was handed to.
        """
        connections = [
            self.active_connections[cid] for cid in connection_ids
            if cid in self.active_connections
        ]
        if not connections:
            return []

        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )
        return [conn.id for conn, success in zip(connections, results) if success is True]

    async def broadcast_all(self, message: dict) -> List[str]:
        """Send to every open connection."""
        return await self.send_many(list(self.active_connections), message)

    async def _safe_send(self, connection: Connection, message: dict) -> bool:
        """Send a message to a connection with error handling.

        A failed send is not cleaned up here; the socket's receive loop sees
        the disconnect and runs :meth:`on_disconnect`.
        """
        try:
            await connection.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection {connection.id}: {e}")
            return False
