"""
Bearer token helpers.

Tokens are issued by the external auth service as HS256 JWTs carrying the
user id in ``userId`` (``sub`` is accepted too). This module only verifies
them; it never issues tokens.
"""

import logging

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError

from taskflow.config import Settings, get_settings

logger = logging.getLogger(__name__)


def extract_bearer_token(authorization: str | None) -> str | None:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def decode_access_token(token: str, settings: Settings | None = None) -> str | None:
    """
    Verify a bearer token and return the user id it names.

    Returns None for missing, malformed, expired or badly signed tokens.
    """
    if not token:
        return None

    settings = settings or get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"leeway": settings.jwt_leeway},
        )
    except ExpiredSignatureError:
        logger.debug("Token expired")
        return None
    except JWTError as e:
        logger.debug("Invalid token: %s", e)
        return None

    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        logger.debug("Token has no user id claim")
        return None
    return str(user_id)
