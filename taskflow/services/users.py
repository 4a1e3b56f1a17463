"""
User/identity collaborator.

Resolves bearer credentials to users and stores the best-effort presence
write-through (status, last seen).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskflow.config import Settings
from taskflow.database import session_scope
from taskflow.exceptions import CollaboratorError
from taskflow.models.user import User
from taskflow.services.auth import decode_access_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIdentity:
    """The subset of a user record the realtime layer needs."""

    user_id: str
    username: str
    role: str = "user"


def _parse_id(user_id: str) -> int | None:
    try:
        return int(user_id)
    except (TypeError, ValueError):
        return None


class UserService:
    """Database-backed user lookups."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings

    async def get_user(self, user_id: str) -> UserIdentity | None:
        """Return an active user by id, or None."""
        pk = _parse_id(user_id)
        if pk is None:
            return None

        async with session_scope(self._session_factory) as db:
            result = await db.execute(select(User).where(User.id == pk))
            user = result.scalar_one_or_none()

        if not user or not user.is_active:
            return None
        return UserIdentity(user_id=str(user.id), username=user.username, role=user.role)

    async def resolve_credential(self, token: str | None) -> UserIdentity | None:
        """
        Resolve a bearer token to an active user.

        Returns None when the token or the user it names is rejected.

        Raises:
            CollaboratorError: the user lookup failed. This is not a
                rejection; the handler closes with a setup failure so the
                client keeps reconnecting.
        """
        user_id = decode_access_token(token or "", self._settings)
        if not user_id:
            return None

        try:
            return await self.get_user(user_id)
        except SQLAlchemyError as e:
            logger.error("Error resolving credential for user %s: %s", user_id, e)
            raise CollaboratorError("Credential lookup failed") from e

    async def update_presence(self, user_id: str, status: str, last_seen: datetime) -> None:
        """
        Persist status and last-seen time.

        Raises:
            CollaboratorError: the write failed.
        """
        pk = _parse_id(user_id)
        if pk is None:
            return

        if last_seen.tzinfo is not None:
            last_seen = last_seen.astimezone(timezone.utc).replace(tzinfo=None)

        try:
            async with session_scope(self._session_factory) as db:
                await db.execute(
                    update(User).where(User.id == pk).values(status=status, last_seen=last_seen)
                )
        except SQLAlchemyError as e:
            raise CollaboratorError("Failed to update user presence") from e
