"""End-to-end tests for the /ws endpoint."""

import time
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from jose import jwt
from sqlalchemy.exc import OperationalError
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from taskflow.services.users import UserService


def receive_until(websocket, message_type: str, limit: int = 20) -> dict:
    """Read frames until one of ``message_type`` arrives."""
    for _ in range(limit):
        message = websocket.receive_json()
        if message["type"] == message_type:
            return message
    raise AssertionError(f"no {message_type} frame within {limit} messages")


def wait_for(condition, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def test_missing_token_closes_4001(client, app):
    with client.websocket_connect("/ws") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()

    assert exc_info.value.code == 4001
    assert app.state.realtime.get_online_count() == 0


def test_bad_token_closes_4001(client):
    with client.websocket_connect("/ws?token=forged") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()

    assert exc_info.value.code == 4001


def test_auth_collaborator_failure_closes_4000(client, app):
    failing = MagicMock()
    failing.resolve_credential = AsyncMock(side_effect=RuntimeError("db down"))
    app.state.user_service = failing

    with client.websocket_connect("/ws?token=token-alice") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()

    assert exc_info.value.code == 4000


def test_database_outage_during_auth_closes_4000(client, app, test_settings, mock_db_session):
    mock_db_session.execute.side_effect = OperationalError("SELECT users", {}, Exception("db down"))

    @asynccontextmanager
    async def session_factory():
        yield mock_db_session

    app.state.user_service = UserService(session_factory, test_settings)
    token = jwt.encode({"userId": 1}, "test-secret-key", algorithm="HS256")

    with client.websocket_connect(f"/ws?token={token}") as websocket:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()

    assert exc_info.value.code == 4000
    assert app.state.realtime.get_online_count() == 0


def test_query_token_connects(client, app):
    with client.websocket_connect("/ws?token=token-alice") as websocket:
        welcome = websocket.receive_json()

        assert welcome["type"] == "connection"
        assert welcome["data"]["user"]["username"] == "alice"
        assert welcome["data"]["onlineUsers"][0]["id"] == "1"
        assert app.state.realtime.get_online_count() == 1

        websocket.close()
        assert wait_for(lambda: app.state.realtime.get_online_count() == 0)


def test_bearer_header_connects(client):
    headers = {"Authorization": "Bearer token-bob"}
    with client.websocket_connect("/ws", headers=headers) as websocket:
        assert websocket.receive_json()["data"]["user"]["username"] == "bob"


def test_malformed_frame_keeps_connection_open(client):
    with client.websocket_connect("/ws?token=token-alice") as websocket:
        receive_until(websocket, "connection")

        websocket.send_text("{oops")
        error = receive_until(websocket, "error")
        assert error["data"]["message"] == "Invalid message format"

        websocket.send_json({"type": "ping"})
        assert receive_until(websocket, "pong")["type"] == "pong"


def test_room_round_trip(client, app):
    with client.websocket_connect("/ws?token=token-alice") as alice:
        receive_until(alice, "connection")
        alice.send_json({"type": "join_room", "roomId": "project-1"})
        assert receive_until(alice, "room_joined")["data"]["roomId"] == "project-1"

        with client.websocket_connect("/ws?token=token-bob") as bob:
            receive_until(bob, "connection")
            bob.send_json({"type": "join_room", "roomId": "project-1"})
            members = receive_until(bob, "room_joined")["data"]["members"]
            assert {member["username"] for member in members} == {"alice", "bob"}

            joined = receive_until(alice, "user_joined")
            assert joined["data"]["user"]["username"] == "bob"

            bob.send_json(
                {"type": "user_typing", "data": {"roomId": "project-1", "isTyping": True}}
            )
            typing = receive_until(alice, "user_typing")
            assert typing["data"]["user"]["username"] == "bob"
            assert typing["data"]["typing"] == ["bob"]

            bob.close()
            disconnected = receive_until(alice, "user_disconnected")
            assert disconnected["data"]["user"]["username"] == "bob"
            offline = receive_until(alice, "user_offline")
            assert offline["data"]["user"]["id"] == "2"
            assert app.state.realtime.get_online_count() == 1

        alice.close()
        assert wait_for(lambda: app.state.realtime.rooms.room_ids() == [])


def test_private_message_between_clients(client):
    with client.websocket_connect("/ws?token=token-alice") as alice:
        receive_until(alice, "connection")
        with client.websocket_connect("/ws?token=token-bob") as bob:
            receive_until(bob, "connection")

            alice.send_json(
                {"type": "private_message", "targetUserId": "2", "data": {"message": "hey"}}
            )
            message = receive_until(bob, "private_message")
            assert message["data"]["message"] == "hey"
            assert message["data"]["from"]["username"] == "alice"
            assert receive_until(alice, "message_sent")["data"]["to"] == "2"


def test_idle_connection_is_closed(client, test_settings):
    test_settings.ws_idle_timeout = 0.2

    with client.websocket_connect("/ws?token=token-alice") as websocket:
        receive_until(websocket, "connection")
        with pytest.raises(WebSocketDisconnect) as exc_info:
            receive_until(websocket, "never")

    assert exc_info.value.code == 1001
