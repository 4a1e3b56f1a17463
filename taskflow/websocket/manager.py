"""
WebSocket Connection Manager

Owns the realtime state of one server process:
- Connection Registry (who is connected, from how many devices)
- Room Registry (scoped fan-out)
- Presence Tracker (online/away/busy/offline)

All registry mutation happens under a single asyncio lock. Sends always
happen outside the lock on snapshots, so a slow peer never blocks another
connection's registration or cleanup.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from taskflow.protocol import GOING_AWAY, Envelope, MessageType
from taskflow.websocket.connections import Connection, ConnectionRegistry
from taskflow.websocket.presence import PresenceTracker
from taskflow.websocket.rooms import RoomRegistry

if TYPE_CHECKING:
    from taskflow.services.users import UserService

logger = logging.getLogger(__name__)

# Close code for peers dropped after a failed write
CLOSE_DELIVERY_FAILED = 1011


class ConnectionManager:
    """
    Registry lifecycle and the single cleanup path.

    ``disconnect`` is the only way a connection leaves the registry. It is
    idempotent: the receive loop, a failed broadcast and server shutdown may
    all call it for the same connection.
    """

    def __init__(
        self,
        user_service: "UserService | None" = None,
        send_timeout: float | None = None,
    ):
        self._lock = asyncio.Lock()
        self.connections = ConnectionRegistry()
        self.rooms = RoomRegistry(self.connections, lock=self._lock, send_timeout=send_timeout)
        self.presence = PresenceTracker(self.connections, self.rooms, user_service)
        self.rooms.on_delivery_failure = self._drop
        logger.info("WebSocket Manager initialized")

    async def connect(
        self,
        websocket: Any,
        user_id: str | None,
        username: str,
        role: str = "user",
    ) -> Connection:
        """
        Register an accepted, authenticated WebSocket.

        Sends the ``connection`` welcome (with the online user snapshot) and,
        for the user's first live connection, announces them as online.

        Raises:
            AuthenticationError: ``user_id`` is empty.
        """
        async with self._lock:
            connection, first = self.connections.register(websocket, user_id, username, role)
            if first:
                generation = self.presence.next_generation(connection.user_id)

        logger.info(
            "WebSocket connected: user=%s (%s) connection=%s",
            connection.user_id,
            connection.username,
            connection.connection_id,
        )

        await self.rooms.send_to(
            [connection],
            Envelope.create(
                MessageType.CONNECTION,
                {
                    "message": "Connected to TaskFlow real-time server",
                    "connectionId": connection.connection_id,
                    "user": connection.to_summary(),
                    "onlineUsers": self.presence.get_online_users(),
                },
            ),
        )

        # Skipped by the tracker if the welcome failed and the connection is gone
        if first:
            await self.presence.mark_online(connection, generation)

        return connection

    async def disconnect(self, connection: Connection) -> bool:
        """
        Remove a connection from the registry and from every room.

        Remaining room members get ``user_disconnected``; when this was the
        user's last connection they are marked offline.

        Returns:
            False if the connection had already been removed.
        """
        async with self._lock:
            last = self.connections.unregister(connection)
            if last is None:
                return False
            remaining_rooms = self.rooms.detach(connection)
            if last:
                generation = self.presence.next_generation(connection.user_id)

        logger.info(
            "WebSocket disconnected: user=%s connection=%s (%d left online)",
            connection.user_id,
            connection.connection_id,
            self.connections.count(),
        )

        for room_id in remaining_rooms:
            await self.rooms.broadcast(
                room_id,
                Envelope.create(
                    MessageType.USER_DISCONNECTED,
                    {"user": {"id": connection.user_id, "username": connection.username}},
                    room_id=room_id,
                ),
            )

        if last:
            await self.presence.mark_offline(connection, generation)

        return True

    async def _drop(self, connection: Connection) -> None:
        """Delivery failure: treat the peer as gone."""
        if await self.disconnect(connection):
            await self._close_quietly(connection, CLOSE_DELIVERY_FAILED, "Delivery failed")

    async def _close_quietly(self, connection: Connection, code: int, reason: str) -> None:
        try:
            await connection.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("Close of connection %s failed: %s", connection.connection_id, e)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def send(self, connection: Connection, envelope: Envelope) -> bool:
        """Write to a single connection. Returns False if it failed."""
        return await self.rooms.send_to([connection], envelope) == 1

    async def send_to_user(self, user_id: str, envelope: Envelope) -> int:
        """
        Write to every live connection of a user.

        Returns:
            Number of connections the user had; 0 means offline.
        """
        async with self._lock:
            targets = self.connections.lookup_by_user_id(user_id)
        if targets:
            await self.rooms.send_to(targets, envelope)
        return len(targets)

    async def join_room(self, room_id: str, connection: Connection) -> bool:
        return await self.rooms.join(room_id, connection)

    async def leave_room(self, room_id: str, connection: Connection) -> bool:
        return await self.rooms.leave(room_id, connection)

    async def broadcast_to_all(self, envelope: Envelope, exclude: Connection | None = None) -> int:
        return await self.rooms.broadcast_to_all(envelope, exclude=exclude)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_online_count(self) -> int:
        """Number of live connections."""
        return self.connections.count()

    def get_online_users(self) -> list[dict]:
        return self.presence.get_online_users()

    def get_room_members_count(self, room_id: str) -> int:
        return self.rooms.member_count(room_id)

    def get_stats(self) -> dict:
        return {
            "connections": self.connections.count(),
            "users": self.connections.user_count(),
            "rooms": {room_id: self.rooms.member_count(room_id) for room_id in self.rooms.room_ids()},
        }

    async def shutdown(self) -> None:
        """Close every connection; receive loops then run the cleanup path."""
        async with self._lock:
            connections = self.connections.connections()

        logger.info("Closing %d WebSocket connection(s)", len(connections))
        for connection in connections:
            await self._close_quietly(connection, GOING_AWAY, "Server shutting down")
