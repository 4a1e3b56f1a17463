"""
Realtime statistics endpoints.

Read-only views of the in-memory registries for dashboards and operators.
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from taskflow.exceptions import NotFoundError
from taskflow.middleware.auth import get_current_user, require_admin
from taskflow.services.users import UserIdentity

router = APIRouter(prefix="/realtime")


class OnlineUser(BaseModel):
    id: str
    username: str
    role: str
    status: str


class OnlineUsersResponse(BaseModel):
    count: int
    users: list[OnlineUser]


class RealtimeStats(BaseModel):
    connections: int
    users: int
    rooms: dict[str, int]


class RoomMember(BaseModel):
    id: str
    username: str
    role: str


class RoomResponse(BaseModel):
    roomId: str
    count: int
    members: list[RoomMember]
    typing: list[str]


@router.get("/online", response_model=OnlineUsersResponse)
async def get_online_users(
    request: Request,
    user: UserIdentity = Depends(get_current_user),
):
    """Users with at least one live connection."""
    users = request.app.state.realtime.get_online_users()
    return OnlineUsersResponse(count=len(users), users=users)


@router.get("/stats", response_model=RealtimeStats)
async def get_stats(
    request: Request,
    user: UserIdentity = Depends(require_admin),
):
    """Connection, user and per-room member counts."""
    return request.app.state.realtime.get_stats()


@router.get("/rooms/{room_id}", response_model=RoomResponse)
async def get_room(
    room_id: str,
    request: Request,
    user: UserIdentity = Depends(get_current_user),
):
    """Members of one room."""
    rooms = request.app.state.realtime.rooms
    members = rooms.members(room_id)
    if members is None:
        raise NotFoundError("Room", room_id)

    return RoomResponse(
        roomId=room_id,
        count=len(members),
        members=[member.to_summary() for member in members],
        typing=sorted(rooms.typing_in(room_id)),
    )
