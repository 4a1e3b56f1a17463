"""
Custom exception hierarchy.

HTTP errors (raised from the REST routes) subclass HTTPException so FastAPI
converts them to JSON error responses:

    raise NotFoundError("Room", room_id)
    raise UnauthorizedError("Invalid token")

Realtime errors never leave the WebSocket layer. The message router turns
them into ``error`` envelopes for the sender; authentication failures close
the transport before the connection is registered:

    raise ProtocolError("Invalid message format")
    raise CollaboratorError("Failed to update task")
"""

from fastapi import HTTPException, status

# Close codes used before a connection is registered
CLOSE_AUTH_FAILED = 4001
CLOSE_SETUP_FAILED = 4000


class AppError(HTTPException):
    """Base application error with a default status code."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(
            status_code=self.__class__.status_code,
            detail=message,
        )
        self.extra_detail = detail


class NotFoundError(AppError):
    """Resource not found (404)."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, resource_id: int | str | None = None):
        if resource_id is not None:
            message = f"{resource} not found (id={resource_id})"
        else:
            message = f"{resource} not found"
        super().__init__(message)


class ForbiddenError(AppError):
    """Forbidden access (403)."""

    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class UnauthorizedError(AppError):
    """Unauthorized access (401)."""

    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ServiceError(AppError):
    """Internal service error (500)."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)


class RealtimeError(Exception):
    """Base class for errors raised inside the WebSocket layer."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthenticationError(RealtimeError):
    """The credential did not resolve to an active user."""

    close_code = CLOSE_AUTH_FAILED

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message)


class ProtocolError(RealtimeError):
    """Inbound frame is not a valid envelope."""

    def __init__(self, message: str = "Invalid message format"):
        super().__init__(message)


class UnknownMessageTypeError(ProtocolError):
    """Envelope carries a type the router does not handle."""

    def __init__(self, message_type: str):
        super().__init__("Unknown message type")
        self.message_type = message_type


class CollaboratorError(RealtimeError):
    """A persistence collaborator failed; reported to the sender, never retried."""


class DeliveryError(RealtimeError):
    """Writing to a connection's transport failed."""

    def __init__(self, connection_id: str, reason: str):
        super().__init__(f"Delivery to {connection_id} failed: {reason}")
        self.connection_id = connection_id
