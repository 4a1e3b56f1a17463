"""
Room Registry

Named groups of connections used for scoped fan-out. A room exists only while
it has members: it is created by the first join and deleted when the last
member leaves or disconnects.

Fan-out never raises. A recipient whose write fails is handed to
``on_delivery_failure`` (the manager's disconnect path) after the other
recipients have been served.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

from taskflow.exceptions import DeliveryError
from taskflow.protocol import Envelope, MessageType
from taskflow.websocket.connections import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

DeliveryFailureHandler = Callable[[Connection], Awaitable[None]]


class RoomRegistry:
    """Dynamic room membership plus broadcast helpers."""

    def __init__(
        self,
        connections: ConnectionRegistry,
        lock: asyncio.Lock | None = None,
        send_timeout: float | None = None,
    ):
        self._connections = connections
        self._lock = lock or asyncio.Lock()
        self._send_timeout = send_timeout
        # room_id -> members
        self._rooms: dict[str, set[Connection]] = {}
        # room_id -> usernames currently typing
        self._typing: dict[str, set[str]] = {}
        self.on_delivery_failure: DeliveryFailureHandler | None = None

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def join(self, room_id: str, connection: Connection) -> bool:
        """
        Add a connection to a room, creating the room if needed.

        Other members get ``user_joined`` (only when the connection was not
        already a member); the joiner always gets ``room_joined`` with the
        member list as of the join.

        Returns:
            True if the connection was newly added.
        """
        async with self._lock:
            if connection not in self._connections:
                logger.debug(
                    "Ignoring join of %s by unregistered connection %s",
                    room_id,
                    connection.connection_id,
                )
                return False

            members = self._rooms.setdefault(room_id, set())
            added = connection not in members
            members.add(connection)
            snapshot = [member.to_summary() for member in members]

        if added:
            logger.info("User %s joined room '%s'", connection.user_id, room_id)
            await self.broadcast(
                room_id,
                Envelope.create(
                    MessageType.USER_JOINED,
                    {"user": connection.to_summary()},
                    room_id=room_id,
                ),
                exclude=connection,
            )

        await self.send_to(
            [connection],
            Envelope.create(
                MessageType.ROOM_JOINED,
                {"roomId": room_id, "members": snapshot},
                room_id=room_id,
            ),
        )
        return added

    async def leave(self, room_id: str, connection: Connection) -> bool:
        """
        Remove a connection from a room.

        The room is deleted when it becomes empty; otherwise the remaining
        members get ``user_left``.

        Returns:
            True if the connection was a member.
        """
        async with self._lock:
            members = self._rooms.get(room_id)
            if not members or connection not in members:
                return False
            members.discard(connection)
            self._stop_typing(room_id, connection)
            remaining = bool(members)
            if not remaining:
                self._delete_room(room_id)

        logger.info("User %s left room '%s'", connection.user_id, room_id)
        if remaining:
            await self.broadcast(
                room_id,
                Envelope.create(
                    MessageType.USER_LEFT,
                    {"user": {"id": connection.user_id, "username": connection.username}},
                    room_id=room_id,
                ),
            )
        return True

    def detach(self, connection: Connection) -> list[str]:
        """
        Remove a connection from every room it belongs to.

        Synchronous: the caller holds the shared lock and unregisters the
        connection in the same critical section.

        Returns:
            Ids of the affected rooms that still have members.
        """
        remaining = []
        for room_id in list(self._rooms):
            members = self._rooms[room_id]
            if connection not in members:
                continue
            members.discard(connection)
            self._stop_typing(room_id, connection)
            if members:
                remaining.append(room_id)
            else:
                self._delete_room(room_id)
        return remaining

    def _delete_room(self, room_id: str) -> None:
        del self._rooms[room_id]
        self._typing.pop(room_id, None)
        logger.debug("Room '%s' is empty, deleted", room_id)

    def _stop_typing(self, room_id: str, connection: Connection) -> None:
        typing = self._typing.get(room_id)
        if typing is None:
            return
        still_present = any(
            member.user_id == connection.user_id for member in self._rooms.get(room_id, ())
        )
        if not still_present:
            typing.discard(connection.username)
        if not typing:
            del self._typing[room_id]

    # ------------------------------------------------------------------
    # Typing indicators
    # ------------------------------------------------------------------

    async def set_typing(
        self, room_id: str, connection: Connection, is_typing: bool
    ) -> frozenset[str] | None:
        """
        Update the room's typing set.

        Returns:
            The new set of typing usernames, or None when the connection is
            not a member of the room.
        """
        async with self._lock:
            members = self._rooms.get(room_id)
            if not members or connection not in members:
                return None
            typing = self._typing.setdefault(room_id, set())
            if is_typing:
                typing.add(connection.username)
            else:
                typing.discard(connection.username)
            result = frozenset(typing)
            if not typing:
                del self._typing[room_id]
        return result

    def typing_in(self, room_id: str) -> frozenset[str]:
        return frozenset(self._typing.get(room_id, ()))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def members(self, room_id: str) -> list[Connection] | None:
        """Current members, or None when the room does not exist."""
        members = self._rooms.get(room_id)
        if members is None:
            return None
        return list(members)

    def member_count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, ()))

    def is_member(self, room_id: str, connection: Connection) -> bool:
        return connection in self._rooms.get(room_id, ())

    def rooms_for(self, connection: Connection) -> list[str]:
        return [room_id for room_id, members in self._rooms.items() if connection in members]

    def room_ids(self) -> list[str]:
        return list(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def broadcast(
        self,
        room_id: str,
        envelope: Envelope,
        exclude: Connection | None = None,
    ) -> int:
        """
        Deliver an envelope to every member of a room except ``exclude``.

        Returns:
            Number of members the envelope was written to.
        """
        async with self._lock:
            targets = [m for m in self._rooms.get(room_id, ()) if m is not exclude]

        logger.debug(
            "Broadcasting %s to room '%s' (%d recipient(s))",
            envelope.type,
            room_id,
            len(targets),
        )
        return await self.send_to(targets, envelope)

    async def broadcast_to_all(
        self,
        envelope: Envelope,
        exclude: Connection | None = None,
    ) -> int:
        """Deliver an envelope to every registered connection."""
        async with self._lock:
            targets = [c for c in self._connections.connections() if c is not exclude]

        logger.debug("Broadcasting %s to all (%d recipient(s))", envelope.type, len(targets))
        return await self.send_to(targets, envelope)

    async def send_to(self, targets: Iterable[Connection], envelope: Envelope) -> int:
        """
        Write an envelope to each target concurrently.

        A failed write does not affect the other targets; the failed
        connection is handed to ``on_delivery_failure`` afterwards.
        """
        targets = list(targets)
        if not targets:
            return 0

        results = await asyncio.gather(
            *(target.send(envelope, timeout=self._send_timeout) for target in targets),
            return_exceptions=True,
        )

        failed = []
        for target, result in zip(targets, results):
            if isinstance(result, DeliveryError):
                logger.warning("Failed to send %s to user %s: %s", envelope.type, target.user_id, result)
                failed.append(target)
            elif isinstance(result, BaseException):
                logger.error(
                    "Unexpected error sending %s to user %s: %r", envelope.type, target.user_id, result
                )
                failed.append(target)

        for target in failed:
            await self._report_failure(target)

        return len(targets) - len(failed)

    async def _report_failure(self, connection: Connection) -> None:
        if self.on_delivery_failure is None:
            return
        try:
            await self.on_delivery_failure(connection)
        except Exception:
            logger.exception("Cleanup failed for connection %s", connection.connection_id)
