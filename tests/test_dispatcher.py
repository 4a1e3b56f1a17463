"""Tests for inbound message routing."""

import json

import pytest
import pytest_asyncio

from helpers import ALICE, BOB, CAROL
from taskflow.exceptions import CollaboratorError


def frame(message_type: str, **fields) -> str:
    return json.dumps({"type": message_type, **fields})


@pytest_asyncio.fixture
async def trio(manager, connect):
    alice, alice_ws = await connect(ALICE)
    bob, bob_ws = await connect(BOB)
    carol, carol_ws = await connect(CAROL)
    for websocket in (alice_ws, bob_ws, carol_ws):
        websocket.clear()
    return (alice, alice_ws), (bob, bob_ws), (carol, carol_ws)


@pytest.mark.asyncio
async def test_malformed_frame_gets_error_and_connection_stays(manager, router, connect):
    alice, alice_ws = await connect(ALICE)
    alice_ws.clear()

    await router.dispatch(alice, "{not json")

    assert alice_ws.types() == ["error"]
    assert alice_ws.sent[0]["data"]["message"] == "Invalid message format"
    assert alice in manager.connections


@pytest.mark.asyncio
async def test_unknown_type_gets_error(router, connect):
    alice, alice_ws = await connect(ALICE)
    alice_ws.clear()

    await router.dispatch(alice, frame("launch_rockets"))

    assert alice_ws.sent[0]["data"]["message"] == "Unknown message type"


@pytest.mark.asyncio
async def test_server_only_type_is_not_accepted(router, connect):
    alice, alice_ws = await connect(ALICE)
    alice_ws.clear()

    await router.dispatch(alice, frame("task_updated", data={}))

    assert alice_ws.types() == ["error"]


@pytest.mark.asyncio
async def test_join_room_requires_room_id(manager, router, connect):
    alice, alice_ws = await connect(ALICE)
    alice_ws.clear()

    await router.dispatch(alice, frame("join_room"))

    assert alice_ws.sent[0]["data"]["message"] == "'roomId' is required"
    assert manager.rooms.room_ids() == []


@pytest.mark.asyncio
async def test_join_and_leave_room(manager, router, connect):
    alice, alice_ws = await connect(ALICE)

    await router.dispatch(alice, frame("join_room", roomId="project-1"))
    assert manager.rooms.is_member("project-1", alice)
    assert alice_ws.of_type("room_joined")

    await router.dispatch(alice, frame("leave_room", data={"roomId": "project-1"}))
    assert "project-1" not in manager.rooms


@pytest.mark.asyncio
async def test_typing_reaches_room_without_echo(manager, router, trio):
    (alice, alice_ws), (bob, bob_ws), (carol, carol_ws) = trio
    await manager.join_room("R", alice)
    await manager.join_room("R", bob)
    for websocket in (alice_ws, bob_ws, carol_ws):
        websocket.clear()

    await router.dispatch(alice, frame("user_typing", data={"roomId": "R", "isTyping": True}))

    assert alice_ws.sent == []
    assert carol_ws.sent == []
    typing = bob_ws.of_type("user_typing")
    assert len(typing) == 1
    assert typing[0]["data"]["user"] == {"id": "1", "username": "alice"}
    assert typing[0]["data"]["isTyping"] is True
    assert typing[0]["data"]["typing"] == ["alice"]


@pytest.mark.asyncio
async def test_typing_from_non_member_is_ignored(manager, router, trio):
    (alice, alice_ws), (bob, bob_ws), _ = trio
    await manager.join_room("R", bob)
    bob_ws.clear()

    await router.dispatch(alice, frame("user_typing", data={"roomId": "R", "isTyping": True}))

    assert bob_ws.sent == []
    assert alice_ws.sent == []


@pytest.mark.asyncio
async def test_private_message_reaches_every_device(manager, router, connect):
    alice, alice_ws = await connect(ALICE)
    _, bob_phone = await connect(BOB)
    _, bob_laptop = await connect(BOB)
    for websocket in (alice_ws, bob_phone, bob_laptop):
        websocket.clear()

    await router.dispatch(
        alice, frame("private_message", targetUserId="2", data={"message": "hi"})
    )

    for websocket in (bob_phone, bob_laptop):
        messages = websocket.of_type("private_message")
        assert len(messages) == 1
        assert messages[0]["data"]["message"] == "hi"
        assert messages[0]["data"]["from"]["username"] == "alice"
    assert alice_ws.types() == ["message_sent"]
    assert alice_ws.sent[0]["data"]["to"] == "2"


@pytest.mark.asyncio
async def test_private_message_to_offline_user(router, connect):
    alice, alice_ws = await connect(ALICE)
    alice_ws.clear()

    await router.dispatch(
        alice, frame("private_message", targetUserId="99", data={"message": "hi"})
    )

    assert alice_ws.types() == ["error"]
    assert alice_ws.sent[0]["data"]["message"] == "User not found or offline"


@pytest.mark.asyncio
async def test_task_update_broadcasts_to_everyone(router, task_service, trio):
    (alice, alice_ws), (_, bob_ws), (_, carol_ws) = trio

    await router.dispatch(
        alice, frame("task_update", data={"taskId": "t1", "updates": {"status": "in-progress"}})
    )

    task_service.update_task.assert_awaited_once_with("t1", {"status": "in-progress"}, "1")
    for websocket in (alice_ws, bob_ws, carol_ws):
        updated = websocket.of_type("task_updated")
        assert len(updated) == 1
        assert updated[0]["data"]["task"]["id"] == "t1"
        assert updated[0]["data"]["updatedBy"] == {"id": "1", "username": "alice"}


@pytest.mark.asyncio
async def test_task_update_with_room_is_scoped(manager, router, trio):
    (alice, alice_ws), (bob, bob_ws), (_, carol_ws) = trio
    await manager.join_room("project-1", alice)
    await manager.join_room("project-1", bob)

    await router.dispatch(
        alice,
        frame(
            "task_update",
            roomId="project-1",
            data={"taskId": "t1", "updates": {"status": "done"}},
        ),
    )

    assert alice_ws.of_type("task_updated")
    assert bob_ws.of_type("task_updated")[0]["roomId"] == "project-1"
    assert carol_ws.of_type("task_updated") == []


@pytest.mark.asyncio
async def test_task_event_for_room_sender_is_not_in_is_rejected(manager, router, task_service, trio):
    (alice, alice_ws), (bob, bob_ws), _ = trio
    await manager.join_room("project-1", bob)
    bob_ws.clear()

    await router.dispatch(
        alice,
        frame(
            "task_assignment",
            roomId="project-1",
            data={"taskId": "t1", "assignedTo": "2"},
        ),
    )

    assert alice_ws.types() == ["error"]
    assert alice_ws.sent[0]["data"]["message"] == "Not a member of room 'project-1'"
    task_service.assign_task.assert_not_awaited()
    assert bob_ws.of_type("task_assigned") == []


@pytest.mark.asyncio
async def test_failed_task_update_never_broadcasts(router, task_service, trio):
    (alice, alice_ws), (_, bob_ws), _ = trio
    task_service.update_task.side_effect = CollaboratorError("Failed to update task")

    await router.dispatch(
        alice, frame("task_update", data={"taskId": "t1", "updates": {"status": "done"}})
    )

    assert alice_ws.types() == ["error"]
    assert alice_ws.sent[0]["data"]["message"] == "Failed to update task"
    assert bob_ws.of_type("task_updated") == []


@pytest.mark.asyncio
async def test_task_update_missing_fields(router, task_service, trio):
    (alice, alice_ws), _, _ = trio

    await router.dispatch(alice, frame("task_update", data={"taskId": "t1"}))

    assert alice_ws.sent[0]["data"]["message"] == "'updates' is required"
    task_service.update_task.assert_not_awaited()


@pytest.mark.asyncio
async def test_unexpected_handler_error_is_reported(router, task_service, trio):
    (alice, alice_ws), (_, bob_ws), _ = trio
    task_service.add_comment.side_effect = RuntimeError("boom")

    await router.dispatch(alice, frame("task_comment", data={"taskId": "t1", "comment": "x"}))

    assert alice_ws.sent[0]["data"]["message"] == "Internal server error"
    assert bob_ws.sent == []


@pytest.mark.asyncio
async def test_task_comment(router, task_service, trio):
    (alice, _), (_, bob_ws), _ = trio

    await router.dispatch(
        alice, frame("task_comment", data={"taskId": "t1", "comment": "Looks good"})
    )

    task_service.add_comment.assert_awaited_once_with("t1", "Looks good", "1")
    commented = bob_ws.of_type("task_commented")[0]["data"]
    assert commented["taskId"] == "t1"
    assert commented["comment"]["text"] == "Looks good"
    assert commented["comment"]["author"]["username"] == "alice"


@pytest.mark.asyncio
async def test_task_assignment_defaults_assigner_to_sender(router, task_service, trio):
    (alice, _), (_, bob_ws), _ = trio

    await router.dispatch(
        alice, frame("task_assignment", data={"taskId": "t1", "assignedTo": "2"})
    )

    task_service.assign_task.assert_awaited_once_with("t1", "2", "1")
    assigned = bob_ws.of_type("task_assigned")[0]["data"]
    assert assigned["task"]["assignedTo"] == "2"
    assert assigned["assignedBy"]["username"] == "alice"


@pytest.mark.asyncio
async def test_presence_update(manager, router, trio):
    (alice, _), (_, bob_ws), _ = trio

    await router.dispatch(alice, frame("user_presence", data={"status": "away"}))

    assert bob_ws.of_type("user_presence")[0]["data"]["user"]["status"] == "away"


@pytest.mark.asyncio
async def test_invalid_presence_status(router, trio):
    (alice, alice_ws), (_, bob_ws), _ = trio

    await router.dispatch(alice, frame("user_presence", data={"status": "sleeping"}))

    assert alice_ws.types() == ["error"]
    assert bob_ws.sent == []


@pytest.mark.asyncio
async def test_targeted_notification(router, trio):
    (alice, alice_ws), (_, bob_ws), (_, carol_ws) = trio

    await router.dispatch(
        alice,
        frame(
            "notification",
            data={"type": "warning", "message": "Deploy at 5", "targetUsers": ["2", 2]},
        ),
    )

    notifications = bob_ws.of_type("notification")
    assert len(notifications) == 1
    assert notifications[0]["data"]["notification"]["message"] == "Deploy at 5"
    assert notifications[0]["data"]["notification"]["type"] == "warning"
    assert carol_ws.sent == []
    assert alice_ws.sent == []


@pytest.mark.asyncio
async def test_untargeted_notification_goes_to_everyone(router, trio):
    (alice, alice_ws), (_, bob_ws), (_, carol_ws) = trio

    await router.dispatch(alice, frame("notification", data={"message": "Lunch"}))

    for websocket in (alice_ws, bob_ws, carol_ws):
        assert websocket.of_type("notification")[0]["data"]["notification"]["type"] == "info"


@pytest.mark.asyncio
async def test_ping_gets_pong(router, trio):
    (alice, alice_ws), _, _ = trio

    await router.dispatch(alice, frame("ping"))

    assert alice_ws.types() == ["pong"]
