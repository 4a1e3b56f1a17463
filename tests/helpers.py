"""Test doubles shared across the suite."""

import asyncio
import json
from unittest.mock import AsyncMock

from starlette.websockets import WebSocketState

from taskflow.services.users import UserIdentity

ALICE = UserIdentity(user_id="1", username="alice", role="user")
BOB = UserIdentity(user_id="2", username="bob", role="user")
CAROL = UserIdentity(user_id="3", username="carol", role="admin")


class FakeWebSocket:
    """Stands in for a Starlette WebSocket on the sending side."""

    def __init__(self, fail: bool = False, delay: float | None = None):
        self.sent: list[dict] = []
        self.client_state = WebSocketState.CONNECTED
        self.closed: tuple[int, str | None] | None = None
        self.fail = fail
        self.delay = delay

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket is dead")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = (code, reason)
        self.client_state = WebSocketState.DISCONNECTED

    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]

    def of_type(self, message_type: str) -> list[dict]:
        return [message for message in self.sent if message["type"] == message_type]

    def clear(self) -> None:
        self.sent.clear()


class FakeUserService:
    """Token -> identity table plus a recorded presence write-through."""

    def __init__(self, *identities: UserIdentity):
        self.tokens = {f"token-{identity.username}": identity for identity in identities}
        self.update_presence = AsyncMock()

    async def resolve_credential(self, token):
        return self.tokens.get(token)


class FakeTransport:
    """Client-side transport: frames pushed by the test, sends recorded."""

    def __init__(self, fail_sends: int = 0):
        self.sent: list[dict] = []
        self.close_code: int | None = None
        self.fail_sends = fail_sends
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, text: str) -> None:
        if self.fail_sends:
            self.fail_sends -= 1
            raise ConnectionError("transport write failed")
        self.sent.append(json.loads(text))

    def push(self, message: dict) -> None:
        self._inbox.put_nowait(json.dumps(message))

    def drop(self, code: int) -> None:
        """Simulate the server (or network) closing the connection."""
        self.close_code = code
        self._inbox.put_nowait(None)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_code is None:
            self.close_code = code
        self._inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._inbox.get()
        if frame is None:
            raise StopAsyncIteration
        return frame

    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]


def auth_header(identity: UserIdentity) -> dict:
    return {"Authorization": f"Bearer token-{identity.username}"}


async def settle(rounds: int = 50) -> None:
    """Let background tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)
