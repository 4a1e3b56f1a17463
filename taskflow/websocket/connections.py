"""
Connection Registry

The single source of truth for who is currently connected. A user may hold
several live connections at once (devices, browser tabs); every one of them
receives what is addressed to that user.

Registry methods are synchronous and never suspend. The ConnectionManager
calls them while holding its lock so that registry removal and room
detachment form one critical section.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from starlette.websockets import WebSocketState

from taskflow.exceptions import AuthenticationError, DeliveryError
from taskflow.protocol import Envelope, utc_timestamp

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Connection:
    """One live, authenticated transport-level link."""

    websocket: Any
    user_id: str
    username: str
    role: str = "user"
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def to_summary(self) -> dict:
        """Public user fields included in broadcasts."""
        return {
            "id": self.user_id,
            "username": self.username,
            "role": self.role,
        }

    def to_dict(self) -> dict:
        return {
            **self.to_summary(),
            "connectionId": self.connection_id,
            "connectedAt": utc_timestamp(self.connected_at),
        }

    async def send(self, envelope: Envelope, timeout: float | None = None) -> None:
        """
        Write one envelope to the transport.

        Writes to the same socket are serialized so each recipient sees
        envelopes in the order they were handed over.

        Raises:
            DeliveryError: the socket is closed, the write failed, or it did
                not complete within ``timeout`` seconds.
        """
        state = getattr(self.websocket, "client_state", None)
        if state is not None and state != WebSocketState.CONNECTED:
            raise DeliveryError(self.connection_id, f"socket state {state.name}")

        async with self._send_lock:
            try:
                if timeout:
                    await asyncio.wait_for(self.websocket.send_text(envelope.to_json()), timeout)
                else:
                    await self.websocket.send_text(envelope.to_json())
            except asyncio.TimeoutError as e:
                raise DeliveryError(self.connection_id, "send timed out") from e
            except Exception as e:
                raise DeliveryError(self.connection_id, str(e) or type(e).__name__) from e


class ConnectionRegistry:
    """Table of live connections, indexed by connection id and by user id."""

    def __init__(self):
        # connection_id -> Connection
        self._connections: dict[str, Connection] = {}
        # user_id -> connection_id -> Connection (insertion ordered)
        self._by_user: dict[str, dict[str, Connection]] = {}

    def register(
        self,
        websocket: Any,
        user_id: str | None,
        username: str,
        role: str = "user",
    ) -> tuple[Connection, bool]:
        """
        Insert a connection for an authenticated user.

        Returns:
            The new Connection and whether it is the user's first live one.

        Raises:
            AuthenticationError: authentication did not resolve a user. The
                caller must close the transport and not retry registration.
        """
        if not user_id:
            raise AuthenticationError()

        connection = Connection(
            websocket=websocket,
            user_id=str(user_id),
            username=username,
            role=role,
        )
        devices = self._by_user.setdefault(connection.user_id, {})
        first = not devices
        devices[connection.connection_id] = connection
        self._connections[connection.connection_id] = connection

        logger.debug(
            "Registered connection %s for user %s (%d device(s), %d total)",
            connection.connection_id,
            connection.user_id,
            len(devices),
            len(self._connections),
        )
        return connection, first

    def unregister(self, connection: Connection) -> bool | None:
        """
        Remove a connection. Safe to call repeatedly.

        Returns:
            None if the connection was not registered (already removed),
            otherwise True when this was the user's last live connection.
        """
        if self._connections.pop(connection.connection_id, None) is None:
            return None

        devices = self._by_user.get(connection.user_id)
        if devices is not None:
            devices.pop(connection.connection_id, None)
            if devices:
                return False
            del self._by_user[connection.user_id]
        return True

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def lookup_by_user_id(self, user_id: str) -> list[Connection]:
        """All live connections of a user, oldest first."""
        return list(self._by_user.get(str(user_id), {}).values())

    def is_online(self, user_id: str) -> bool:
        return str(user_id) in self._by_user

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def user_ids(self) -> list[str]:
        return list(self._by_user.keys())

    def count(self) -> int:
        return len(self._connections)

    def user_count(self) -> int:
        return len(self._by_user)

    def __contains__(self, connection: object) -> bool:
        return (
            isinstance(connection, Connection)
            and self._connections.get(connection.connection_id) is connection
        )

    def __len__(self) -> int:
        return len(self._connections)
