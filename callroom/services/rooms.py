"""In-memory room registry for two-party calls."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol
from uuid import uuid4

from ..core.config import settings
from ..core.errors import RoomFullError, RoomNotFoundError
from ..core.timers import Scheduler, TimerHandle, loop_call_later

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Room:
    id: str
    participants: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class JoinResult:
    room_id: str
    existing_participants: list[str]
    left: Optional["LeaveResult"] = None


@dataclass(slots=True)
class LeaveResult:
    room_id: str
    remaining_participants: list[str]


class RoomStore(Protocol):
    """Operations the signaling endpoint needs from a room table."""

    def create(self) -> str: ...

    def join(self, room_id: str, participant_id: str) -> JoinResult: ...

    def leave(self, room_id: str, participant_id: str) -> list[str]: ...

    def drop(self, participant_id: str) -> Optional[LeaveResult]: ...

    def get(self, room_id: str) -> Optional[Room]: ...


class InMemoryRoomRegistry:
    """Process-local room table with capacity checks and delayed cleanup."""

    def __init__(
        self,
        *,
        capacity: int | None = None,
        grace_seconds: float | None = None,
        id_length: int | None = None,
        call_later: Scheduler | None = None,
    ) -> None:
        self._capacity = capacity if capacity is not None else settings.room_capacity
        self._grace_seconds = grace_seconds if grace_seconds is not None else settings.room_grace_seconds
        self._id_length = id_length if id_length is not None else settings.room_id_length
        self._call_later = call_later or loop_call_later
        self._rooms: Dict[str, Room] = {}
        self._deletion_timers: Dict[str, TimerHandle] = {}
        self._membership: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def room_of(self, participant_id: str) -> Optional[str]:
        return self._membership.get(participant_id)

    def create(self) -> str:
        """Insert an empty room under a fresh id and return the id."""

        room_id = self._new_id()
        while room_id in self._rooms:
            room_id = self._new_id()
        self._rooms[room_id] = Room(id=room_id)
        # A room nobody ever joins is cleaned up like an abandoned one.
        self._schedule_deletion(room_id)
        logger.info("Room created: %s", room_id)
        return room_id

    def join(self, room_id: str, participant_id: str) -> JoinResult:
        """Add a participant and return who was already present."""

        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)

        if participant_id in room.participants:
            others = [pid for pid in room.participants if pid != participant_id]
            return JoinResult(room_id=room_id, existing_participants=others)

        if len(room.participants) >= self._capacity:
            raise RoomFullError(room_id)

        left = None
        previous_room = self._membership.get(participant_id)
        if previous_room is not None and previous_room != room_id:
            left = LeaveResult(previous_room, self.leave(previous_room, participant_id))

        if self._cancel_deletion(room_id):
            logger.info("Room %s deletion cancelled - user joined", room_id)
        existing = list(room.participants)
        room.participants.append(participant_id)
        self._membership[participant_id] = room_id
        logger.info("User %s joined room %s", participant_id, room_id)
        return JoinResult(room_id=room_id, existing_participants=existing, left=left)

    def leave(self, room_id: str, participant_id: str) -> list[str]:
        """Remove a participant; returns the remaining members, empty if nothing changed."""

        room = self._rooms.get(room_id)
        if room is None or participant_id not in room.participants:
            return []

        room.participants.remove(participant_id)
        if self._membership.get(participant_id) == room_id:
            self._membership.pop(participant_id, None)
        logger.info("User %s left room %s", participant_id, room_id)

        if not room.participants:
            self._schedule_deletion(room_id)
        return list(room.participants)

    def drop(self, participant_id: str) -> Optional[LeaveResult]:
        """Leave whatever room the participant occupies (transport disconnect)."""

        room_id = self._membership.get(participant_id)
        if room_id is None:
            return None
        remaining = self.leave(room_id, participant_id)
        return LeaveResult(room_id=room_id, remaining_participants=remaining)

    def close(self) -> None:
        """Cancel every pending deletion timer."""

        for handle in self._deletion_timers.values():
            handle.cancel()
        self._deletion_timers.clear()

    def _new_id(self) -> str:
        return uuid4().hex[: self._id_length]

    def _schedule_deletion(self, room_id: str) -> None:
        self._cancel_deletion(room_id)
        self._deletion_timers[room_id] = self._call_later(
            self._grace_seconds, lambda: self._delete_if_empty(room_id)
        )
        logger.info("Room %s will be deleted in %ss if no one joins", room_id, self._grace_seconds)

    def _cancel_deletion(self, room_id: str) -> bool:
        handle = self._deletion_timers.pop(room_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def _delete_if_empty(self, room_id: str) -> None:
        self._deletion_timers.pop(room_id, None)
        room = self._rooms.get(room_id)
        if room is not None and not room.participants:
            self._rooms.pop(room_id, None)
            logger.info("Room %s deleted (empty for %ss)", room_id, self._grace_seconds)


registry = InMemoryRoomRegistry()
