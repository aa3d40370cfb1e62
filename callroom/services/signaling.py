"""In-memory WebRTC signaling relay."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable

from ..core.config import settings
from ..schemas.signaling import RelayEnvelope, RelayRequest, frame
from .rooms import RoomStore, registry as default_registry

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable


class SignalingRelay:
    """Route negotiation messages between the sockets of a room."""

    def __init__(self, rooms: RoomStore | None = None, *, require_membership: bool | None = None) -> None:
        self._rooms = rooms if rooms is not None else default_registry
        self._require_membership = (
            settings.relay_require_room_membership if require_membership is None else require_membership
        )
        self._connections: Dict[str, SignalingConnection] = {}
        self._lock = asyncio.Lock()

    @property
    def rooms(self) -> RoomStore:
        return self._rooms

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._connections

    async def register(self, connection: SignalingConnection) -> None:
        async with self._lock:
            self._connections[connection.connection_id] = connection

    async def unregister(self, connection_id: str) -> None:
        async with self._lock:
            self._connections.pop(connection_id, None)

    async def relay_to(self, target_id: str, message: dict) -> bool:
        """Deliver a message to one participant; unreachable targets are dropped."""

        async with self._lock:
            connection = self._connections.get(target_id)

        if connection is None:
            logger.debug("Dropping %s for unreachable participant %s", message.get("type"), target_id)
            return False

        try:
            await connection.send(message)
        except Exception as exc:  # noqa: BLE001 - at-most-once delivery
            logger.warning("Failed to deliver %s to %s: %s", message.get("type"), target_id, exc)
            return False
        return True

    async def relay(self, kind: str, sender_id: str, request: RelayRequest) -> bool:
        """Forward an offer, answer or ICE candidate, stamping the sender id."""

        if self._require_membership and not self._same_room(request.room_id, sender_id, request.target_user_id):
            logger.warning(
                "Dropping %s from %s to %s: not members of room %s",
                kind,
                sender_id,
                request.target_user_id,
                request.room_id,
            )
            return False

        envelope = RelayEnvelope(user_id=sender_id, payload=request.payload)
        delivered = await self.relay_to(request.target_user_id, frame(kind, envelope.model_dump(by_alias=True)))
        if delivered:
            logger.info("%s sent from %s to %s", kind.capitalize(), sender_id, request.target_user_id)
        return delivered

    async def notify(self, participant_ids: Iterable[str], message: dict) -> None:
        """Send a notice to each listed participant, ignoring individual failures."""

        targets = list(participant_ids)
        if not targets:
            return
        await asyncio.gather(*(self.relay_to(target, message) for target in targets), return_exceptions=True)

    def _same_room(self, room_id: str, *participant_ids: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None:
            return False
        return all(pid in room.participants for pid in participant_ids)


relay = SignalingRelay()
