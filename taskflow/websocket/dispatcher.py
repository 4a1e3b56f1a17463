"""
Message Router

Parses inbound frames and dispatches them by envelope type. Every failure is
answered with an ``error`` envelope to the sender; nothing raised while
handling one frame reaches the receive loop.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from taskflow.exceptions import CollaboratorError, ProtocolError, UnknownMessageTypeError
from taskflow.protocol import Envelope, MessageType
from taskflow.services.tasks import TaskService
from taskflow.websocket.connections import Connection
from taskflow.websocket.manager import ConnectionManager

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Envelope], Awaitable[None]]


def _require(data: dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None or value == "":
        raise ProtocolError(f"'{key}' is required")
    return value


def _room_id(envelope: Envelope) -> str:
    room_id = envelope.room_id or envelope.data.get("roomId")
    if not room_id:
        raise ProtocolError("'roomId' is required")
    return str(room_id)


def _sender(connection: Connection) -> dict:
    return {"id": connection.user_id, "username": connection.username}


class MessageRouter:
    """Dispatch table from MessageType to handler coroutine."""

    def __init__(self, manager: ConnectionManager, task_service: TaskService | None = None):
        self._manager = manager
        self._tasks = task_service
        self._handlers: dict[MessageType, Handler] = {
            MessageType.JOIN_ROOM: self._join_room,
            MessageType.LEAVE_ROOM: self._leave_room,
            MessageType.TASK_UPDATE: self._task_update,
            MessageType.TASK_COMMENT: self._task_comment,
            MessageType.TASK_ASSIGNMENT: self._task_assignment,
            MessageType.USER_TYPING: self._user_typing,
            MessageType.USER_PRESENCE: self._user_presence,
            MessageType.PRIVATE_MESSAGE: self._private_message,
            MessageType.NOTIFICATION: self._notification,
            MessageType.PING: self._ping,
        }

    async def dispatch(self, connection: Connection, raw: str | bytes) -> None:
        """Handle one raw inbound frame from ``connection``."""
        try:
            envelope = Envelope.parse(raw)
            await self.handle(connection, envelope)
        except ProtocolError as e:
            logger.warning("Rejected frame from user %s: %s", connection.user_id, e.message)
            await self._reply_error(connection, e.message)

    async def handle(self, connection: Connection, envelope: Envelope) -> None:
        """
        Run the handler for an already parsed envelope.

        Raises:
            UnknownMessageTypeError: no handler for ``envelope.type``.
            ProtocolError: the payload is missing required fields.
        """
        message_type = envelope.message_type
        handler = self._handlers.get(message_type) if message_type else None
        if handler is None:
            raise UnknownMessageTypeError(envelope.type)

        logger.debug("Handling %s from user %s", envelope.type, connection.user_id)
        try:
            await handler(connection, envelope)
        except CollaboratorError as e:
            await self._reply_error(connection, e.message)
        except ProtocolError:
            raise
        except Exception:
            logger.exception("Error handling %s from user %s", envelope.type, connection.user_id)
            await self._reply_error(connection, "Internal server error")

    async def _reply_error(self, connection: Connection, message: str) -> None:
        await self._manager.send(connection, Envelope.error(message))

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def _join_room(self, connection: Connection, envelope: Envelope) -> None:
        await self._manager.join_room(_room_id(envelope), connection)

    async def _leave_room(self, connection: Connection, envelope: Envelope) -> None:
        await self._manager.leave_room(_room_id(envelope), connection)

    async def _user_typing(self, connection: Connection, envelope: Envelope) -> None:
        room_id = _room_id(envelope)
        is_typing = bool(envelope.data.get("isTyping", False))

        typing = await self._manager.rooms.set_typing(room_id, connection, is_typing)
        if typing is None:
            logger.debug("User %s is not in room '%s', typing ignored", connection.user_id, room_id)
            return

        await self._manager.rooms.broadcast(
            room_id,
            Envelope.create(
                MessageType.USER_TYPING,
                {
                    "user": _sender(connection),
                    "isTyping": is_typing,
                    "roomId": room_id,
                    "typing": sorted(typing),
                },
                room_id=room_id,
            ),
            exclude=connection,
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _task_service(self) -> TaskService:
        if self._tasks is None:
            raise CollaboratorError("Task service unavailable")
        return self._tasks

    def _event_room(self, connection: Connection, envelope: Envelope) -> str | None:
        """
        Room a task event is scoped to, checked before the task is written.

        Raises:
            ProtocolError: the sender is not a member of the named room.
        """
        room_id = envelope.room_id
        if room_id and not self._manager.rooms.is_member(room_id, connection):
            raise ProtocolError(f"Not a member of room '{room_id}'")
        return room_id

    async def _publish_task_event(self, room_id: str | None, event: Envelope) -> None:
        if room_id:
            await self._manager.rooms.broadcast(room_id, event)
        else:
            await self._manager.broadcast_to_all(event)

    async def _task_update(self, connection: Connection, envelope: Envelope) -> None:
        task_id = _require(envelope.data, "taskId")
        room_id = self._event_room(connection, envelope)
        updates = _require(envelope.data, "updates")

        task = await self._task_service().update_task(task_id, updates, connection.user_id)
        await self._publish_task_event(
            room_id,
            Envelope.create(
                MessageType.TASK_UPDATED,
                {"task": task, "updatedBy": _sender(connection)},
                room_id=room_id,
            ),
        )

    async def _task_comment(self, connection: Connection, envelope: Envelope) -> None:
        task_id = _require(envelope.data, "taskId")
        room_id = self._event_room(connection, envelope)
        text = _require(envelope.data, "comment")

        comment = await self._task_service().add_comment(task_id, text, connection.user_id)
        await self._publish_task_event(
            room_id,
            Envelope.create(
                MessageType.TASK_COMMENTED,
                {"taskId": str(task_id), "comment": {**comment, "author": _sender(connection)}},
                room_id=room_id,
            ),
        )

    async def _task_assignment(self, connection: Connection, envelope: Envelope) -> None:
        task_id = _require(envelope.data, "taskId")
        room_id = self._event_room(connection, envelope)
        assigned_to = _require(envelope.data, "assignedTo")
        assigned_by = envelope.data.get("assignedBy") or connection.user_id

        task = await self._task_service().assign_task(task_id, assigned_to, assigned_by)
        await self._publish_task_event(
            room_id,
            Envelope.create(
                MessageType.TASK_ASSIGNED,
                {"task": task, "assignedBy": _sender(connection)},
                room_id=room_id,
            ),
        )

    # ------------------------------------------------------------------
    # Presence & messaging
    # ------------------------------------------------------------------

    async def _user_presence(self, connection: Connection, envelope: Envelope) -> None:
        status = _require(envelope.data, "status")
        try:
            await self._manager.presence.set_status(connection.user_id, status)
        except ValueError:
            raise ProtocolError(f"Invalid presence status '{status}'") from None

    async def _private_message(self, connection: Connection, envelope: Envelope) -> None:
        target = envelope.target_user_id or envelope.data.get("targetUserId")
        if not target:
            raise ProtocolError("'targetUserId' is required")
        target = str(target)

        delivered = await self._manager.send_to_user(
            target,
            Envelope.create(
                MessageType.PRIVATE_MESSAGE,
                {"from": _sender(connection), "message": envelope.data.get("message")},
                target_user_id=target,
            ),
        )

        if not delivered:
            await self._reply_error(connection, "User not found or offline")
            return

        await self._manager.send(
            connection,
            Envelope.create(MessageType.MESSAGE_SENT, {"to": target}, target_user_id=target),
        )

    async def _notification(self, connection: Connection, envelope: Envelope) -> None:
        notification = Envelope.create(
            MessageType.NOTIFICATION,
            {
                "notification": {
                    "type": envelope.data.get("type", "info"),
                    "message": envelope.data.get("message"),
                    "from": _sender(connection),
                }
            },
        )

        target_users = envelope.data.get("targetUsers")
        if target_users:
            if not isinstance(target_users, list):
                raise ProtocolError("'targetUsers' must be a list")
            for user_id in dict.fromkeys(str(u) for u in target_users):
                await self._manager.send_to_user(user_id, notification)
        else:
            await self._manager.broadcast_to_all(notification)

    async def _ping(self, connection: Connection, envelope: Envelope) -> None:
        await self._manager.send(connection, Envelope.create(MessageType.PONG))
