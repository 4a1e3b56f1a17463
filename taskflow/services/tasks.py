"""
Task persistence collaborator.

Each operation returns the event payload for the updated task or raises
CollaboratorError with a message safe to show the sender. Retrying is up to
the caller; the realtime router does not retry.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taskflow.database import session_scope
from taskflow.exceptions import CollaboratorError
from taskflow.models.task import TASK_PRIORITIES, TASK_STATUSES, Task, TaskComment
from taskflow.protocol import utc_timestamp

logger = logging.getLogger(__name__)

# Wire field -> column
UPDATABLE_FIELDS = {
    "title": "title",
    "description": "description",
    "status": "status",
    "priority": "priority",
    "progress": "progress",
}

MAX_COMMENT_LENGTH = 500


def _parse_id(value: Any, what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise CollaboratorError(f"{what} not found") from None


def _validate_updates(updates: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(updates, dict) or not updates:
        raise CollaboratorError("No task fields to update")

    values = {}
    for key, value in updates.items():
        column = UPDATABLE_FIELDS.get(key)
        if column is None:
            raise CollaboratorError(f"Field '{key}' cannot be updated")
        values[column] = value

    if "status" in values and values["status"] not in TASK_STATUSES:
        raise CollaboratorError(f"Invalid status '{values['status']}'")
    if "priority" in values and values["priority"] not in TASK_PRIORITIES:
        raise CollaboratorError(f"Invalid priority '{values['priority']}'")
    if "progress" in values:
        progress = values["progress"]
        if not isinstance(progress, int) or isinstance(progress, bool) or not 0 <= progress <= 100:
            raise CollaboratorError("Progress must be an integer between 0 and 100")
    if "title" in values and not str(values["title"]).strip():
        raise CollaboratorError("Task title is required")
    return values


class TaskService:
    """Database-backed task mutations used by the realtime router."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    async def _load(self, db: AsyncSession, task_id: int) -> Task:
        task = await db.get(Task, task_id)
        if task is None:
            raise CollaboratorError("Task not found")
        return task

    async def update_task(self, task_id: Any, updates: dict[str, Any], user_id: str) -> dict:
        """Apply field updates to a task."""
        pk = _parse_id(task_id, "Task")
        values = _validate_updates(updates)

        try:
            async with session_scope(self._session_factory) as db:
                task = await self._load(db, pk)
                for column, value in values.items():
                    setattr(task, column, value)
                task.last_modified = datetime.utcnow()
                await db.flush()
                payload = task.to_event_dict()
        except SQLAlchemyError as e:
            logger.error("Error updating task %s: %s", task_id, e)
            raise CollaboratorError("Failed to update task") from e

        logger.info("Task %s updated by user %s: %s", pk, user_id, sorted(values))
        return payload

    async def add_comment(self, task_id: Any, text: str, author_id: str) -> dict:
        """Append a comment to a task. Returns the stored comment."""
        pk = _parse_id(task_id, "Task")
        author = _parse_id(author_id, "User")
        text = (text or "").strip() if isinstance(text, str) else ""
        if not text:
            raise CollaboratorError("Comment text is required")
        if len(text) > MAX_COMMENT_LENGTH:
            raise CollaboratorError(f"Comment cannot exceed {MAX_COMMENT_LENGTH} characters")

        try:
            async with session_scope(self._session_factory) as db:
                task = await self._load(db, pk)
                comment = TaskComment(
                    task_id=task.id,
                    author_id=author,
                    content=text,
                    created_at=datetime.utcnow(),
                )
                db.add(comment)
                task.last_modified = datetime.utcnow()
                await db.flush()
                payload = {
                    "id": str(comment.id) if comment.id is not None else None,
                    "text": comment.content,
                    "createdAt": utc_timestamp(comment.created_at),
                }
        except SQLAlchemyError as e:
            logger.error("Error adding comment to task %s: %s", task_id, e)
            raise CollaboratorError("Failed to add comment") from e

        return payload

    async def assign_task(self, task_id: Any, assigned_to: Any, assigned_by: Any) -> dict:
        """Change a task's assignee."""
        pk = _parse_id(task_id, "Task")
        assignee = _parse_id(assigned_to, "Assignee")
        assigner = _parse_id(assigned_by, "User") if assigned_by is not None else None

        try:
            async with session_scope(self._session_factory) as db:
                task = await self._load(db, pk)
                task.assigned_to = assignee
                task.assigned_by = assigner
                task.assigned_at = datetime.utcnow()
                task.last_modified = task.assigned_at
                await db.flush()
                payload = task.to_event_dict()
        except SQLAlchemyError as e:
            logger.error("Error assigning task %s: %s", task_id, e)
            raise CollaboratorError("Failed to assign task") from e

        return payload
