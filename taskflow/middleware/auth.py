"""
Authentication dependencies for the HTTP routes.

Bearer tokens are issued by the external auth service; this module only
resolves them to users through the user collaborator on ``app.state``.
"""

from fastapi import Depends, Header, Request

from taskflow.exceptions import ForbiddenError, UnauthorizedError
from taskflow.services.auth import extract_bearer_token
from taskflow.services.users import UserIdentity


async def get_current_user(
    request: Request,
    authorization: str | None = Header(None),
) -> UserIdentity:
    """
    Get current authenticated user.

    Raises 401 if the bearer token is missing or does not resolve to an
    active user.
    """
    token = extract_bearer_token(authorization)
    if not token:
        raise UnauthorizedError("Not authenticated")

    user = await request.app.state.user_service.resolve_credential(token)
    if user is None:
        raise UnauthorizedError("Invalid or expired token")
    return user


async def require_admin(
    user: UserIdentity = Depends(get_current_user),
) -> UserIdentity:
    """
    Require admin role.

    Raises 403 if user is not an admin.
    """
    if user.role != "admin":
        raise ForbiddenError("Admin access required")
    return user
