"""
Live client-side view of the realtime feed.

Subscribes to a RealtimeClient and keeps what a UI would render: who is
online, room members, private messages, recent notifications and typing
indicators.
"""

import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from taskflow.client.connection import RealtimeClient
from taskflow.client.indicators import TypingIndicators
from taskflow.protocol import Envelope, MessageType, PresenceStatus, utc_timestamp

logger = logging.getLogger(__name__)


class RealtimeStore:
    """Aggregates inbound envelopes into plain Python state."""

    def __init__(
        self,
        notification_history: int = 50,
        typing_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        # user id -> user dict, in arrival order
        self.online_users: dict[str, dict] = {}
        # room id -> user id -> user dict
        self.room_members: dict[str, dict[str, dict]] = {}
        self.messages: list[dict] = []
        self.notifications: deque[dict] = deque(maxlen=notification_history)
        self.typing = TypingIndicators(timeout=typing_timeout, clock=clock)
        self.last_error: str | None = None

        self._handlers: dict[str, Callable[[Envelope], None]] = {
            MessageType.CONNECTION.value: self._on_connection,
            MessageType.ROOM_JOINED.value: self._on_room_joined,
            MessageType.USER_JOINED.value: self._on_user_joined,
            MessageType.USER_LEFT.value: self._on_user_left,
            MessageType.USER_DISCONNECTED.value: self._on_user_left,
            MessageType.USER_OFFLINE.value: self._on_user_offline,
            MessageType.USER_PRESENCE.value: self._on_user_presence,
            MessageType.TASK_UPDATED.value: self._on_task_updated,
            MessageType.TASK_COMMENTED.value: self._on_task_commented,
            MessageType.TASK_ASSIGNED.value: self._on_task_assigned,
            MessageType.USER_TYPING.value: self._on_user_typing,
            MessageType.PRIVATE_MESSAGE.value: self._on_private_message,
            MessageType.NOTIFICATION.value: self._on_notification,
            MessageType.ERROR.value: self._on_error,
        }

    def attach(self, client: RealtimeClient) -> None:
        client.on("*", self.apply)

    def apply(self, envelope: Any) -> None:
        """Fold one inbound envelope into the view. Other events are ignored."""
        if not isinstance(envelope, Envelope):
            return
        handler = self._handlers.get(envelope.type)
        if handler is not None:
            handler(envelope)

    def clear_notifications(self) -> None:
        self.notifications.clear()

    def clear_messages(self) -> None:
        self.messages.clear()

    def members_of(self, room_id: str) -> list[dict]:
        return list(self.room_members.get(room_id, {}).values())

    def _notify(self, kind: str, message: str, data: Any = None, timestamp: str | None = None) -> None:
        self.notifications.append(
            {
                "type": kind,
                "message": message,
                "data": data,
                "timestamp": timestamp or utc_timestamp(),
            }
        )

    def _upsert_online(self, user: dict) -> None:
        user_id = str(user.get("id"))
        self.online_users[user_id] = {**self.online_users.get(user_id, {}), **user}

    # ------------------------------------------------------------------
    # Presence and rooms
    # ------------------------------------------------------------------

    def _on_connection(self, envelope: Envelope) -> None:
        self.online_users = {}
        for user in envelope.data.get("onlineUsers") or []:
            self._upsert_online(user)

    def _on_room_joined(self, envelope: Envelope) -> None:
        room_id = envelope.data.get("roomId") or envelope.room_id
        members = envelope.data.get("members") or []
        self.room_members[room_id] = {str(m.get("id")): m for m in members}
        for member in members:
            if str(member.get("id")) not in self.online_users:
                self._upsert_online({**member, "status": PresenceStatus.ONLINE.value})

    def _on_user_joined(self, envelope: Envelope) -> None:
        user = envelope.data.get("user") or {}
        if envelope.room_id:
            self.room_members.setdefault(envelope.room_id, {})[str(user.get("id"))] = user
        self._notify("info", f"{user.get('username')} joined", timestamp=envelope.timestamp)

    def _on_user_left(self, envelope: Envelope) -> None:
        user = envelope.data.get("user") or {}
        members = self.room_members.get(envelope.room_id)
        if members is not None:
            members.pop(str(user.get("id")), None)
        if envelope.type == MessageType.USER_LEFT.value:
            self._notify("info", f"{user.get('username')} left", timestamp=envelope.timestamp)

    def _on_user_offline(self, envelope: Envelope) -> None:
        user = envelope.data.get("user") or {}
        self.online_users.pop(str(user.get("id")), None)

    def _on_user_presence(self, envelope: Envelope) -> None:
        user = envelope.data.get("user") or {}
        if user.get("status") == PresenceStatus.OFFLINE.value:
            self.online_users.pop(str(user.get("id")), None)
        else:
            self._upsert_online(user)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _on_task_updated(self, envelope: Envelope) -> None:
        task = envelope.data.get("task") or {}
        by = envelope.data.get("updatedBy") or {}
        self._notify(
            "task_update",
            f'Task "{task.get("title")}" was updated by {by.get("username")}',
            envelope.data,
            envelope.timestamp,
        )

    def _on_task_commented(self, envelope: Envelope) -> None:
        author = (envelope.data.get("comment") or {}).get("author") or {}
        self._notify(
            "task_comment",
            f"{author.get('username')} commented on task",
            envelope.data,
            envelope.timestamp,
        )

    def _on_task_assigned(self, envelope: Envelope) -> None:
        task = envelope.data.get("task") or {}
        self._notify(
            "task_assignment",
            f'Task "{task.get("title")}" was assigned to {task.get("assignedTo")}',
            envelope.data,
            envelope.timestamp,
        )

    # ------------------------------------------------------------------
    # Typing and messaging
    # ------------------------------------------------------------------

    def _on_user_typing(self, envelope: Envelope) -> None:
        room_id = envelope.data.get("roomId") or envelope.room_id
        if not room_id:
            return
        typing = envelope.data.get("typing")
        if typing is not None:
            self.typing.update(room_id, typing)
        else:
            user = envelope.data.get("user") or {}
            self.typing.set_user(room_id, user.get("username"), bool(envelope.data.get("isTyping")))

    def _on_private_message(self, envelope: Envelope) -> None:
        sender = envelope.data.get("from") or {}
        self.messages.append(
            {
                "from": sender,
                "message": envelope.data.get("message"),
                "timestamp": envelope.timestamp,
                "type": "private",
            }
        )
        self._notify(
            "private_message",
            f"New message from {sender.get('username')}",
            envelope.data,
            envelope.timestamp,
        )

    def _on_notification(self, envelope: Envelope) -> None:
        notification = envelope.data.get("notification") or {}
        self._notify(
            notification.get("type", "info"),
            notification.get("message"),
            notification,
            envelope.timestamp,
        )

    def _on_error(self, envelope: Envelope) -> None:
        self.last_error = envelope.data.get("message")
