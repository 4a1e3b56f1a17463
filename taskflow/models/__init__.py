"""
SQLAlchemy models package.
All models inherit from the Base class defined in database.py.
"""

from taskflow.models.task import Task, TaskComment
from taskflow.models.user import User

__all__ = [
    "User",
    "Task",
    "TaskComment",
]
