"""
Shared test fixtures for the TaskFlow realtime test suite.
"""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from helpers import ALICE, BOB, CAROL, FakeUserService, FakeWebSocket
from taskflow.config import Settings
from taskflow.websocket.dispatcher import MessageRouter
from taskflow.websocket.manager import ConnectionManager


@pytest.fixture
def test_settings():
    """Settings configured for testing (no real DB connection needed)."""
    return Settings(
        db_host="localhost",
        db_port=5432,
        db_name="taskflow_test",
        db_user="test",
        db_password="test",
        jwt_secret="test-secret-key",
        ws_send_timeout=1.0,
        debug=True,
    )


@pytest.fixture
def user_service():
    return FakeUserService(ALICE, BOB, CAROL)


@pytest.fixture
def task_service():
    service = AsyncMock()
    service.update_task.return_value = {"id": "t1", "title": "Write docs", "status": "in-progress"}
    service.add_comment.return_value = {"id": "c1", "text": "Looks good", "createdAt": "2025-01-01T00:00:00.000Z"}
    service.assign_task.return_value = {"id": "t1", "title": "Write docs", "assignedTo": "2"}
    return service


@pytest.fixture
def manager(user_service):
    return ConnectionManager(user_service=user_service, send_timeout=1.0)


@pytest.fixture
def router(manager, task_service):
    return MessageRouter(manager, task_service)


@pytest.fixture
def connect(manager):
    """Register a fake socket for an identity."""

    async def _connect(identity, **kwargs):
        websocket = FakeWebSocket(**kwargs)
        connection = await manager.connect(
            websocket, identity.user_id, identity.username, identity.role
        )
        return connection, websocket

    return _connect


@pytest.fixture
def mock_db_session():
    """Create a mock async database session."""
    session = AsyncMock()
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    return session


@pytest.fixture
def app(test_settings, user_service, task_service, mock_db_session):
    """Application with collaborators replaced by fakes and no database."""
    with patch("taskflow.main.get_settings", return_value=test_settings), patch(
        "taskflow.main.init_db", new=AsyncMock()
    ), patch("taskflow.main.close_db", new=AsyncMock()), patch(
        "taskflow.websocket.handler.get_settings", return_value=test_settings
    ):
        from taskflow.database import get_db
        from taskflow.main import create_app

        app = create_app()
        app.state.user_service = user_service
        app.state.task_service = task_service
        app.state.realtime = ConnectionManager(user_service=user_service, send_timeout=1.0)
        app.state.message_router = MessageRouter(app.state.realtime, task_service)
        app.dependency_overrides[get_db] = lambda: mock_db_session

        yield app

        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def app_client(app):
    """HTTP client bound to the test application."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

