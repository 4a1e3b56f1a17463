"""
Services package: collaborators the realtime layer calls into.
"""

from taskflow.services.auth import decode_access_token, extract_bearer_token
from taskflow.services.tasks import TaskService
from taskflow.services.users import UserIdentity, UserService

__all__ = [
    "decode_access_token",
    "extract_bearer_token",
    "TaskService",
    "UserIdentity",
    "UserService",
]
