"""
Wire protocol shared by the realtime server and client.

Every frame is a JSON object:

    {"type": "<tag>", "data": {...}, "roomId": "...", "targetUserId": "...",
     "timestamp": "2025-01-15T09:01:16.715Z"}

Only ``type`` is required on inbound frames. Outbound frames always carry a
timestamp.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from taskflow.exceptions import ProtocolError

NORMAL_CLOSURE = 1000
GOING_AWAY = 1001
ABNORMAL_CLOSURE = 1006


class MessageType(str, Enum):
    """Enumerated envelope tags."""

    # Client -> server
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    TASK_UPDATE = "task_update"
    TASK_COMMENT = "task_comment"
    TASK_ASSIGNMENT = "task_assignment"
    PING = "ping"

    # Server -> client
    CONNECTION = "connection"
    ROOM_JOINED = "room_joined"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    USER_DISCONNECTED = "user_disconnected"
    USER_OFFLINE = "user_offline"
    TASK_UPDATED = "task_updated"
    TASK_COMMENTED = "task_commented"
    TASK_ASSIGNED = "task_assigned"
    MESSAGE_SENT = "message_sent"
    ERROR = "error"
    PONG = "pong"

    # Both directions
    USER_TYPING = "user_typing"
    USER_PRESENCE = "user_presence"
    PRIVATE_MESSAGE = "private_message"
    NOTIFICATION = "notification"


INBOUND_TYPES = frozenset(
    {
        MessageType.JOIN_ROOM,
        MessageType.LEAVE_ROOM,
        MessageType.TASK_UPDATE,
        MessageType.TASK_COMMENT,
        MessageType.TASK_ASSIGNMENT,
        MessageType.USER_TYPING,
        MessageType.USER_PRESENCE,
        MessageType.PRIVATE_MESSAGE,
        MessageType.NOTIFICATION,
        MessageType.PING,
    }
)


class PresenceStatus(str, Enum):
    """User presence states."""

    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


def utc_timestamp(dt: datetime | None = None) -> str:
    """
    Format a timestamp like JavaScript's toISOString().

    Example: "2025-12-08T09:01:16.715Z"
    """
    if dt is None:
        dt = datetime.now(timezone.utc)
    elif dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    formatted = dt.strftime("%Y-%m-%dT%H:%M:%S")
    ms = dt.microsecond // 1000
    return f"{formatted}.{ms:03d}Z"


class Envelope(BaseModel):
    """Immutable unit of wire exchange."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    type: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)
    room_id: str | None = Field(default=None, alias="roomId")
    target_user_id: str | None = Field(default=None, alias="targetUserId")
    timestamp: str | None = None

    @field_validator("data", mode="before")
    @classmethod
    def _default_data(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("room_id", "target_user_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        # Ids arrive as numbers from some clients
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @classmethod
    def create(
        cls,
        message_type: MessageType | str,
        data: dict[str, Any] | None = None,
        room_id: str | None = None,
        target_user_id: str | None = None,
    ) -> "Envelope":
        """Build an outbound envelope stamped with the current time."""
        return cls(
            type=MessageType(message_type).value,
            data=data or {},
            room_id=room_id,
            target_user_id=target_user_id,
            timestamp=utc_timestamp(),
        )

    @classmethod
    def error(cls, message: str, **extra: Any) -> "Envelope":
        """Build an ``error`` envelope for the sender of a bad request."""
        return cls.create(MessageType.ERROR, {"message": message, **extra})

    @classmethod
    def parse(cls, raw: str | bytes) -> "Envelope":
        """
        Decode one inbound frame.

        Raises:
            ProtocolError: the frame is not JSON, not an object, or has no type.
        """
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError("Invalid message format") from e

        if not isinstance(payload, dict):
            raise ProtocolError("Invalid message format")
        if not payload.get("type"):
            raise ProtocolError("Message type is required")

        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise ProtocolError("Invalid message format") from e

    @property
    def message_type(self) -> MessageType | None:
        """The enumerated tag, or None for tags this protocol does not define."""
        try:
            return MessageType(self.type)
        except ValueError:
            return None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
