"""
Client-side typing indicators.

The server sends the full set of usernames typing in a room with every
``user_typing`` event, so each update replaces the room's set. A set that
is not refreshed within ``timeout`` seconds is treated as empty, which
covers peers that disconnect mid-sentence.
"""

import time
from collections.abc import Callable, Iterable


class TypingIndicators:
    """room_id -> usernames currently typing, with expiry."""

    def __init__(self, timeout: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self._clock = clock
        # room_id -> (usernames, updated_at)
        self._rooms: dict[str, tuple[frozenset[str], float]] = {}

    def update(self, room_id: str, usernames: Iterable[str]) -> frozenset[str]:
        """Replace a room's typing set."""
        typing = frozenset(usernames)
        if typing:
            self._rooms[room_id] = (typing, self._clock())
        else:
            self._rooms.pop(room_id, None)
        return typing

    def set_user(self, room_id: str, username: str, is_typing: bool) -> frozenset[str]:
        """Apply a single user's change when the server did not send the full set."""
        current = set(self.get(room_id))
        if is_typing:
            current.add(username)
        else:
            current.discard(username)
        return self.update(room_id, current)

    def get(self, room_id: str) -> frozenset[str]:
        entry = self._rooms.get(room_id)
        if entry is None:
            return frozenset()
        typing, updated_at = entry
        if self._clock() - updated_at >= self.timeout:
            del self._rooms[room_id]
            return frozenset()
        return typing

    def clear(self, room_id: str | None = None) -> None:
        if room_id is None:
            self._rooms.clear()
        else:
            self._rooms.pop(room_id, None)

    def rooms(self) -> list[str]:
        """Rooms with at least one user typing right now."""
        return [room_id for room_id in list(self._rooms) if self.get(room_id)]
