"""
Realtime client connection.

One asyncio task drives the connection state machine:

    disconnected -> connecting -> connected -> reconnecting -> connecting ...

While connected a heartbeat task pings the server. Messages sent while the
socket is not open are queued and replayed in order on the next open.
"""

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any
from urllib.parse import urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from taskflow.client.events import EventEmitter
from taskflow.config import Settings, get_settings
from taskflow.exceptions import CLOSE_AUTH_FAILED, ProtocolError
from taskflow.protocol import ABNORMAL_CLOSURE, NORMAL_CLOSURE, Envelope, MessageType

logger = logging.getLogger(__name__)

STATE_CHANGE = "state_change"
AUTH_FAILED = "auth_failed"

Connector = Callable[[str], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class ExponentialBackoff:
    """
    Reconnect delays: initial, initial*factor, ... capped at ``maximum``.

    A factor of 1 gives a fixed delay.
    """

    def __init__(self, initial: float = 5.0, factor: float = 2.0, maximum: float = 60.0):
        self.initial = initial
        self.factor = factor
        self.maximum = maximum
        self.attempts = 0

    def next_delay(self) -> float:
        delay = min(self.initial * (self.factor**self.attempts), self.maximum)
        self.attempts += 1
        return delay

    def reset(self) -> None:
        self.attempts = 0


async def _default_connector(uri: str) -> Any:
    return await ws_connect(uri)


class RealtimeClient:
    """WebSocket client with heartbeat, reconnection and an outbound queue."""

    def __init__(
        self,
        token: str | None,
        ws_url: str | None = None,
        settings: Settings | None = None,
        connector: Connector | None = None,
        sleep: Sleep | None = None,
        backoff: ExponentialBackoff | None = None,
        heartbeat_interval: float | None = None,
    ):
        settings = settings or get_settings()
        self.token = token
        self.ws_url = (ws_url or settings.ws_url).rstrip("/")
        self.heartbeat_interval = (
            settings.heartbeat_interval if heartbeat_interval is None else heartbeat_interval
        )
        self.backoff = backoff or ExponentialBackoff(
            initial=settings.reconnect_delay,
            factor=settings.reconnect_factor,
            maximum=settings.reconnect_max_delay,
        )
        self.events = EventEmitter()
        self.user: dict | None = None
        self.close_code: int | None = None

        self._connector = connector or _default_connector
        self._sleep = sleep or asyncio.sleep
        self._state = ConnectionState.DISCONNECTED
        self._transport: Any = None
        self._queue: deque[Envelope] = deque()
        self._send_lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._wake = asyncio.Event()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def queued(self) -> list[Envelope]:
        """Envelopes waiting for the next open, oldest first."""
        return list(self._queue)

    def on(self, event: str, listener: Callable[[Any], Any]) -> Callable[[Any], Any]:
        return self.events.on(event, listener)

    def off(self, event: str, listener: Callable[[Any], Any] | None = None) -> None:
        self.events.off(event, listener)

    async def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.debug("Connection state %s -> %s", self._state.value, state.value)
        self._state = state
        await self.events.emit(STATE_CHANGE, state)

    def uri(self) -> str:
        return f"{self.ws_url}/ws?{urlencode({'token': self.token or ''})}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Start connecting in the background.

        During a reconnect wait this retries immediately instead.
        """
        if not self.token:
            logger.warning("No token, not connecting")
            return

        if self._state == ConnectionState.RECONNECTING:
            self._wake.set()
            return
        if self._task is not None and not self._task.done():
            return

        self._running = True
        self._task = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Close with normal closure and stop reconnecting."""
        self._running = False
        self._wake.set()
        self._stop_heartbeat()

        transport = self._transport
        self._transport = None
        if transport is not None:
            try:
                await transport.close(code=NORMAL_CLOSURE, reason="User initiated disconnect")
            except Exception as e:
                logger.debug("Close failed: %s", e)

        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self._set_state(ConnectionState.DISCONNECTED)

    async def wait_closed(self) -> None:
        """Wait until the run task finishes (terminal close or disconnect)."""
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def _run(self) -> None:
        while self._running:
            await self._set_state(ConnectionState.CONNECTING)
            logger.info("Connecting to %s/ws", self.ws_url)

            try:
                transport = await self._connector(self.uri())
            except Exception as e:
                logger.warning("WebSocket connection failed: %s", e)
                code = ABNORMAL_CLOSURE
            else:
                code = await self._serve(transport)

            self.close_code = code
            if not self._running:
                break

            if code == CLOSE_AUTH_FAILED:
                logger.error("WebSocket authentication failed, not reconnecting")
                self._running = False
                await self.events.emit(AUTH_FAILED, {"code": code})
                break

            if code == NORMAL_CLOSURE:
                logger.info("WebSocket closed normally")
                self._running = False
                break

            self._wake.clear()
            await self._set_state(ConnectionState.RECONNECTING)
            delay = self.backoff.next_delay()
            logger.info("Reconnecting in %.1fs (attempt %d)", delay, self.backoff.attempts)
            await self._wait_reconnect(delay)

        await self._set_state(ConnectionState.DISCONNECTED)

    async def _wait_reconnect(self, delay: float) -> None:
        # Returns early when connect() or disconnect() sets the wake event
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waker = asyncio.ensure_future(self._wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (sleeper, waker):
                waiter.cancel()

    async def _serve(self, transport: Any) -> int:
        """Run one open connection until it closes. Returns the close code."""
        self._transport = transport
        self.backoff.reset()
        await self._set_state(ConnectionState.CONNECTED)
        logger.info("WebSocket connected")

        if self.heartbeat_interval:
            self._heartbeat_task = asyncio.create_task(self._heartbeat())

        await self._flush_queue()
        await self.set_presence("online")

        try:
            async for raw in transport:
                await self._handle_frame(raw)
        except ConnectionClosed as e:
            logger.warning("WebSocket connection closed: %s", e)
        except Exception as e:
            logger.error("WebSocket error: %s", e)
        finally:
            self._stop_heartbeat()
            if self._transport is transport:
                self._transport = None

        code = getattr(transport, "close_code", None)
        logger.info("WebSocket disconnected: code=%s", code)
        return code if code is not None else ABNORMAL_CLOSURE

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            envelope = Envelope.parse(raw)
        except ProtocolError as e:
            logger.warning("Error parsing WebSocket message: %s", e.message)
            return

        if envelope.type == MessageType.CONNECTION.value:
            self.user = envelope.data.get("user")
        elif envelope.type == MessageType.ERROR.value:
            logger.error("WebSocket server error: %s", envelope.data.get("message"))
        elif envelope.type == MessageType.PONG.value:
            logger.debug("Pong received")

        await self.events.emit(envelope.type, envelope)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat(self) -> None:
        while True:
            await self._sleep(self.heartbeat_interval)
            transport = self._transport
            if transport is None:
                return
            try:
                await transport.send(Envelope.create(MessageType.PING).to_json())
            except Exception as e:
                logger.debug("Heartbeat failed: %s", e)
                return

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            if self._heartbeat_task is not asyncio.current_task():
                self._heartbeat_task.cancel()
            self._heartbeat_task = None

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, envelope: Envelope) -> bool:
        """
        Send now when connected, otherwise queue for the next open.

        Returns:
            True if the envelope was written to the socket.
        """
        async with self._send_lock:
            if self._transport is None or self._queue:
                self._queue.append(envelope)
                logger.debug("Queued %s (%d waiting)", envelope.type, len(self._queue))
                return False
            try:
                await self._transport.send(envelope.to_json())
            except Exception as e:
                logger.warning("Send of %s failed, queued: %s", envelope.type, e)
                self._queue.appendleft(envelope)
                return False
            return True

    async def _flush_queue(self) -> None:
        async with self._send_lock:
            while self._queue and self._transport is not None:
                envelope = self._queue.popleft()
                try:
                    await self._transport.send(envelope.to_json())
                except Exception as e:
                    logger.warning("Replay of %s failed: %s", envelope.type, e)
                    self._queue.appendleft(envelope)
                    return

    async def join_room(self, room_id: str) -> bool:
        return await self.send_message(Envelope.create(MessageType.JOIN_ROOM, room_id=room_id))

    async def leave_room(self, room_id: str) -> bool:
        return await self.send_message(Envelope.create(MessageType.LEAVE_ROOM, room_id=room_id))

    async def update_task(self, task_id: str, updates: dict, room_id: str | None = None) -> bool:
        return await self.send_message(
            Envelope.create(
                MessageType.TASK_UPDATE, {"taskId": task_id, "updates": updates}, room_id=room_id
            )
        )

    async def add_task_comment(self, task_id: str, comment: str, room_id: str | None = None) -> bool:
        return await self.send_message(
            Envelope.create(
                MessageType.TASK_COMMENT, {"taskId": task_id, "comment": comment}, room_id=room_id
            )
        )

    async def assign_task(self, task_id: str, assigned_to: str, room_id: str | None = None) -> bool:
        data = {"taskId": task_id, "assignedTo": assigned_to}
        if self.user and self.user.get("id"):
            data["assignedBy"] = self.user["id"]
        return await self.send_message(
            Envelope.create(MessageType.TASK_ASSIGNMENT, data, room_id=room_id)
        )

    async def send_private_message(self, target_user_id: str, message: str) -> bool:
        return await self.send_message(
            Envelope.create(
                MessageType.PRIVATE_MESSAGE, {"message": message}, target_user_id=target_user_id
            )
        )

    async def set_typing(self, room_id: str, is_typing: bool) -> bool:
        return await self.send_message(
            Envelope.create(
                MessageType.USER_TYPING, {"roomId": room_id, "isTyping": is_typing}, room_id=room_id
            )
        )

    async def set_presence(self, status: str) -> bool:
        return await self.send_message(Envelope.create(MessageType.USER_PRESENCE, {"status": status}))

    async def send_notification(
        self, notification_type: str, message: str, target_users: list[str] | None = None
    ) -> bool:
        return await self.send_message(
            Envelope.create(
                MessageType.NOTIFICATION,
                {"type": notification_type, "message": message, "targetUsers": target_users or []},
            )
        )
