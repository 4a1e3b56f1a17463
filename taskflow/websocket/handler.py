"""
WebSocket Endpoint Handler

Handles WebSocket connections with bearer-token authentication. The token is
read from the ``token`` query parameter or an ``Authorization: Bearer``
header at handshake time.
"""

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from taskflow.config import get_settings
from taskflow.exceptions import CLOSE_AUTH_FAILED, CLOSE_SETUP_FAILED, AuthenticationError
from taskflow.protocol import GOING_AWAY
from taskflow.services.auth import extract_bearer_token

logger = logging.getLogger(__name__)

router = APIRouter()


def get_token(websocket: WebSocket) -> str | None:
    """Credential from the query string, falling back to the Authorization header."""
    token = websocket.query_params.get("token")
    if token:
        return token
    return extract_bearer_token(websocket.headers.get("authorization"))


async def reject(websocket: WebSocket, code: int, reason: str) -> None:
    """Accept then close so the client sees the close code."""
    await websocket.accept()
    await websocket.close(code=code, reason=reason)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for realtime updates."""
    await handle_websocket_connection(websocket)


async def handle_websocket_connection(websocket: WebSocket) -> None:
    """
    Authenticate, register and serve one connection until it goes away.

    Every exit from the receive loop runs the manager's disconnect, which is
    idempotent and also runs when a broadcast finds this socket dead.
    """
    state = websocket.app.state
    manager = state.realtime
    message_router = state.message_router
    settings = get_settings()

    logger.info("WebSocket connection attempt from %s", websocket.client)

    try:
        identity = await state.user_service.resolve_credential(get_token(websocket))
    except Exception as e:
        logger.exception("Error during WebSocket auth: %s", e)
        await reject(websocket, CLOSE_SETUP_FAILED, "Connection setup failed")
        return

    if identity is None:
        logger.info("WebSocket rejected: authentication failed")
        await reject(websocket, CLOSE_AUTH_FAILED, "Authentication failed")
        return

    await websocket.accept()

    try:
        connection = await manager.connect(
            websocket,
            user_id=identity.user_id,
            username=identity.username,
            role=identity.role,
        )
    except AuthenticationError as e:
        await websocket.close(code=e.close_code, reason=e.message)
        return
    except Exception as e:
        logger.exception("Connection setup failed for user %s: %s", identity.user_id, e)
        await websocket.close(code=CLOSE_SETUP_FAILED, reason="Connection setup failed")
        return

    logger.debug("Starting receive loop for user %s", connection.user_id)

    try:
        while True:
            try:
                message = await asyncio.wait_for(
                    websocket.receive(), timeout=settings.ws_idle_timeout
                )
            except asyncio.TimeoutError:
                logger.info("Heartbeat timeout: user %s", connection.user_id)
                await websocket.close(code=GOING_AWAY, reason="Heartbeat timeout")
                break

            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            data = message.get("text")
            if data is None:
                data = message.get("bytes") or b""
            await message_router.dispatch(connection, data)

    except WebSocketDisconnect as e:
        logger.info("Disconnected: user %s, code=%s", connection.user_id, e.code)
    except Exception as e:
        logger.error("Error for user %s: %s", connection.user_id, e)
    finally:
        await manager.disconnect(connection)
