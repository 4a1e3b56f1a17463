"""
Presence Tracker

Keeps per-user status (online/away/busy/offline). Status follows the user's
live-connection count across the zero boundary and explicit updates in
between; individual connections beyond the first do not change it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from taskflow.protocol import Envelope, MessageType, PresenceStatus, utc_timestamp
from taskflow.websocket.connections import Connection, ConnectionRegistry
from taskflow.websocket.rooms import RoomRegistry

if TYPE_CHECKING:
    from taskflow.services.users import UserService

logger = logging.getLogger(__name__)


@dataclass
class Presence:
    """Last known status of a user."""

    user_id: str
    username: str
    role: str = "user"
    status: PresenceStatus = PresenceStatus.OFFLINE
    last_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.user_id,
            "username": self.username,
            "role": self.role,
            "status": self.status.value,
            "lastSeen": utc_timestamp(self.last_seen),
        }


class PresenceTracker:
    """
    Maintains user_id -> Presence and announces changes to everyone.

    Online/offline transitions carry a per-user generation that the manager
    takes under its lock, in the same critical section as the registry
    change. Transitions of one user run one at a time, and one superseded by
    a later connect or disconnect is neither stored nor announced.
    """

    def __init__(
        self,
        connections: ConnectionRegistry,
        rooms: RoomRegistry,
        user_service: "UserService | None" = None,
    ):
        self._connections = connections
        self._rooms = rooms
        self._user_service = user_service
        self._presence: dict[str, Presence] = {}
        self._generations: dict[str, int] = {}
        self._user_locks: dict[str, asyncio.Lock] = {}

    def get(self, user_id: str) -> Presence | None:
        return self._presence.get(str(user_id))

    def next_generation(self, user_id: str) -> int:
        """Open a new online/offline transition. Caller holds the manager lock."""
        generation = self._generations.get(user_id, 0) + 1
        self._generations[user_id] = generation
        return generation

    def _is_current(self, user_id: str, generation: int) -> bool:
        return self._generations.get(user_id) == generation

    def _user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    async def mark_online(self, connection: Connection, generation: int) -> Presence | None:
        """
        Called when a user's first live connection is registered.

        Returns None when the user disconnected again before this ran.
        """
        user_id = connection.user_id
        async with self._user_lock(user_id):
            if not self._is_current(user_id, generation):
                return None
            now = datetime.now(timezone.utc)
            await self._write_through(user_id, PresenceStatus.ONLINE, now)
            if not self._is_current(user_id, generation):
                return None

            presence = Presence(
                user_id=user_id,
                username=connection.username,
                role=connection.role,
                status=PresenceStatus.ONLINE,
                last_seen=now,
            )
            self._presence[user_id] = presence
            envelope = self._envelope(presence, MessageType.USER_PRESENCE)

        # Announced outside the user lock: a failed send runs the disconnect
        # path, which takes that lock for the offline transition.
        if self._is_current(user_id, generation):
            await self._rooms.broadcast_to_all(envelope)
        return presence

    async def set_status(self, user_id: str, status: PresenceStatus | str) -> Presence:
        """
        Overwrite a user's status and last-seen time, then announce it.

        Raises:
            ValueError: ``status`` is not a presence state.
        """
        status = PresenceStatus(status)
        user_id = str(user_id)

        async with self._user_lock(user_id):
            now = datetime.now(timezone.utc)
            await self._write_through(user_id, status, now)

            presence = self._presence.get(user_id)
            if presence is None:
                devices = self._connections.lookup_by_user_id(user_id)
                presence = Presence(
                    user_id=user_id,
                    username=devices[0].username if devices else "",
                    role=devices[0].role if devices else "user",
                )
                self._presence[user_id] = presence
            presence.status = status
            presence.last_seen = now
            envelope = self._envelope(presence, MessageType.USER_PRESENCE)

        await self._rooms.broadcast_to_all(envelope)
        return presence

    async def mark_offline(self, connection: Connection, generation: int) -> Presence | None:
        """
        Called exactly once when a user's live-connection count drops to zero.

        Distinct from a user choosing ``away`` or ``busy``, which keeps the
        connection open. ``user_offline`` goes out only if the user had been
        announced; the stored status is written either way.

        Returns None when the user reconnected before this ran.
        """
        user_id = connection.user_id
        async with self._user_lock(user_id):
            if not self._is_current(user_id, generation):
                return None
            now = datetime.now(timezone.utc)
            await self._write_through(user_id, PresenceStatus.OFFLINE, now)
            if not self._is_current(user_id, generation):
                return None

            presence = self._presence.get(user_id)
            visible = presence is not None and presence.status is not PresenceStatus.OFFLINE
            if presence is None:
                presence = Presence(
                    user_id=user_id, username=connection.username, role=connection.role
                )
                self._presence[user_id] = presence
            presence.status = PresenceStatus.OFFLINE
            presence.last_seen = now
            envelope = self._envelope(presence, MessageType.USER_OFFLINE)

        if visible and self._is_current(user_id, generation):
            await self._rooms.broadcast_to_all(envelope)
        return presence

    def get_online_users(self) -> list[dict]:
        """Snapshot of every user with at least one live connection."""
        users = []
        for user_id in self._connections.user_ids():
            presence = self._presence.get(user_id)
            # Reconnected but not yet re-announced
            if presence is None or presence.status is PresenceStatus.OFFLINE:
                devices = self._connections.lookup_by_user_id(user_id)
                if not devices:
                    continue
                presence = Presence(
                    user_id=user_id,
                    username=devices[0].username,
                    role=devices[0].role,
                    status=PresenceStatus.ONLINE,
                )
            users.append(
                {
                    "id": presence.user_id,
                    "username": presence.username,
                    "role": presence.role,
                    "status": presence.status.value,
                }
            )
        return users

    @staticmethod
    def _envelope(presence: Presence, message_type: MessageType) -> Envelope:
        if message_type == MessageType.USER_OFFLINE:
            payload = {"user": {"id": presence.user_id, "username": presence.username}}
        else:
            payload = {"user": presence.to_dict()}
        return Envelope.create(message_type, payload)

    async def _write_through(
        self, user_id: str, status: PresenceStatus, last_seen: datetime
    ) -> None:
        """Best-effort copy of status/last-seen to the user store."""
        if self._user_service is None:
            return
        try:
            await self._user_service.update_presence(user_id, status.value, last_seen)
        except Exception as e:
            logger.warning("Could not persist presence for user %s: %s", user_id, e)
