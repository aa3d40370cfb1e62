"""Room lifecycle and signaling websocket endpoints."""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from ..core.errors import RoomFullError, RoomNotFoundError
from ..schemas.signaling import (
    SIGNAL_EVENTS,
    ClientEvent,
    Frame,
    RelayRequest,
    RoomInfo,
    RoomJoined,
    ServerEvent,
    frame,
)
from ..services.signaling import SignalingConnection, SignalingRelay, relay as default_relay

logger = logging.getLogger(__name__)

router = APIRouter()


def get_relay() -> SignalingRelay:
    """FastAPI dependency returning the process-wide relay."""

    return default_relay


class SignalingSession:
    """Per-socket dispatcher for client events."""

    def __init__(self, websocket: WebSocket, relay: SignalingRelay, participant_id: str) -> None:
        self.websocket = websocket
        self.relay = relay
        self.participant_id = participant_id
        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            ClientEvent.CREATE_ROOM.value: self.create_room,
            ClientEvent.JOIN_ROOM.value: self.join_room,
            ClientEvent.LEAVE_ROOM.value: self.leave_room,
        }

    async def send(self, event: ServerEvent, data: Any = None) -> None:
        await self.websocket.send_json(frame(event, data))

    async def dispatch(self, message: object) -> None:
        try:
            incoming = Frame.model_validate(message)
        except ValidationError:
            await self.send(ServerEvent.ERROR, "Malformed message")
            return

        if incoming.type in {event.value for event in SIGNAL_EVENTS}:
            await self.forward_signal(incoming.type, incoming.data)
            return

        handler = self._handlers.get(incoming.type)
        if handler is None:
            await self.send(ServerEvent.ERROR, f"Unknown event: {incoming.type}")
            return
        await handler(incoming.data)

    async def create_room(self, _data: Any) -> None:
        room_id = self.relay.rooms.create()
        await self.send(ServerEvent.ROOM_CREATED, room_id)

    async def join_room(self, data: Any) -> None:
        if not isinstance(data, str) or not data:
            await self.send(ServerEvent.ERROR, "roomId is required")
            return

        try:
            result = self.relay.rooms.join(data, self.participant_id)
        except RoomNotFoundError as exc:
            await self.send(ServerEvent.ERROR, str(exc))
            return
        except RoomFullError:
            await self.send(ServerEvent.ROOM_FULL)
            return

        if result.left is not None:
            await self.relay.notify(
                result.left.remaining_participants, frame(ServerEvent.USER_LEFT, self.participant_id)
            )
        joined = RoomJoined(room_id=result.room_id, participants=result.existing_participants)
        await self.send(ServerEvent.ROOM_JOINED, joined.model_dump(by_alias=True))
        await self.relay.notify(result.existing_participants, frame(ServerEvent.USER_JOINED, self.participant_id))

    async def leave_room(self, data: Any) -> None:
        if not isinstance(data, str) or not data:
            return
        remaining = self.relay.rooms.leave(data, self.participant_id)
        await self.relay.notify(remaining, frame(ServerEvent.USER_LEFT, self.participant_id))

    async def forward_signal(self, kind: str, data: Any) -> None:
        try:
            request = RelayRequest.from_frame(kind, data)
        except ValidationError:
            await self.send(ServerEvent.ERROR, f"Invalid {kind} message")
            return
        await self.relay.relay(kind, self.participant_id, request)

    async def disconnect(self) -> None:
        await self.relay.unregister(self.participant_id)
        result = self.relay.rooms.drop(self.participant_id)
        if result is not None:
            await self.relay.notify(
                result.remaining_participants, frame(ServerEvent.USER_LEFT, self.participant_id)
            )


@router.websocket("/ws")
@router.websocket("/api/signaling")
async def signaling_endpoint(websocket: WebSocket, relay: SignalingRelay = Depends(get_relay)) -> None:
    """Room lifecycle plus offer/answer/ICE relay for one client connection."""

    participant_id = uuid4().hex
    await websocket.accept()
    logger.info("Client connected: %s", participant_id)

    session = SignalingSession(websocket, relay, participant_id)
    await relay.register(SignalingConnection(connection_id=participant_id, send=websocket.send_json))
    await session.send(ServerEvent.CONNECTED, {"userId": participant_id})

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await session.send(ServerEvent.ERROR, "Malformed message")
                continue
            await session.dispatch(message)
    except WebSocketDisconnect:
        pass
    finally:
        logger.info("Client disconnected: %s", participant_id)
        await session.disconnect()


@router.get("/api/rooms/{room_id}", response_model=RoomInfo, response_model_by_alias=True)
async def get_room(room_id: str, relay: SignalingRelay = Depends(get_relay)) -> RoomInfo:
    """Look up a room so a join form can validate an id before connecting."""

    room = relay.rooms.get(room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return RoomInfo(id=room.id, participants=list(room.participants), created_at=room.created_at)
