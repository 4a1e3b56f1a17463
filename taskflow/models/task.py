"""
Task and TaskComment models.
"""

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from taskflow.database import Base
from taskflow.protocol import utc_timestamp

if TYPE_CHECKING:
    from taskflow.models.user import User

TASK_STATUSES = ("pending", "in-progress", "complete", "cancelled")
TASK_PRIORITIES = ("low", "medium", "high", "urgent")


def _format(dt: datetime | None) -> str | None:
    return utc_timestamp(dt) if dt else None


def _id(value: int | None) -> str | None:
    return str(value) if value is not None else None


class Task(Base):
    """A unit of work assigned to a user."""

    __tablename__ = "tasks"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in-progress', 'complete', 'cancelled')",
            name="tasks_status_check",
        ),
        CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')",
            name="tasks_priority_check",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="tasks_progress_check"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="medium", nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    assigned_to: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_by: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    last_modified: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    comments: Mapped[List["TaskComment"]] = relationship(
        "TaskComment",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="TaskComment.created_at",
    )

    def to_event_dict(self) -> dict:
        """Fields broadcast in task events."""
        return {
            "id": str(self.id),
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "progress": self.progress,
            "assignedTo": _id(self.assigned_to),
            "assignedBy": _id(self.assigned_by),
            "assignedAt": _format(self.assigned_at),
            "lastModified": _format(self.last_modified),
        }

    def __repr__(self) -> str:
        return f"<Task {self.id} '{self.title}' status={self.status}>"


class TaskComment(Base):
    """Comment appended to a task."""

    __tablename__ = "task_comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True
    )
    author_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    task: Mapped["Task"] = relationship("Task", back_populates="comments")
    author: Mapped["User"] = relationship("User")
