"""Wire contracts for the signaling websocket."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ClientEvent(str, enum.Enum):
    CREATE_ROOM = "create-room"
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"


class ServerEvent(str, enum.Enum):
    CONNECTED = "connected"
    ROOM_CREATED = "room-created"
    ROOM_JOINED = "room-joined"
    ROOM_FULL = "room-full"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    ERROR = "error"


SIGNAL_EVENTS = frozenset({ClientEvent.OFFER, ClientEvent.ANSWER, ClientEvent.ICE_CANDIDATE})

# Older clients put the description under a per-kind key instead of "payload".
_LEGACY_PAYLOAD_KEYS = {
    ClientEvent.OFFER.value: "offer",
    ClientEvent.ANSWER.value: "answer",
    ClientEvent.ICE_CANDIDATE.value: "candidate",
}


class Frame(BaseModel):
    """One websocket frame: ``{"type": event, "data": payload}``."""

    type: str
    data: Any = None


class RelayRequest(BaseModel):
    """Offer, answer or ICE candidate addressed to another participant."""

    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(..., alias="roomId")
    target_user_id: str = Field(..., alias="targetUserId")
    payload: Any = None

    @classmethod
    def from_frame(cls, kind: str, data: Any) -> "RelayRequest":
        """Validate relay data, accepting the per-kind payload key as well."""

        if isinstance(data, dict) and "payload" not in data:
            legacy_key = _LEGACY_PAYLOAD_KEYS.get(kind)
            if legacy_key and legacy_key in data:
                data = {**data, "payload": data[legacy_key]}
        return cls.model_validate(data)

    @model_validator(mode="after")
    def _require_payload(self) -> "RelayRequest":
        if self.payload is None:
            raise ValueError("payload is required")
        return self


class RelayEnvelope(BaseModel):
    """What the target participant receives for a relayed signal."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    payload: Any


class RoomJoined(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(..., alias="roomId")
    participants: list[str] = Field(default_factory=list)


class RoomInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    participants: list[str] = Field(default_factory=list)
    created_at: datetime = Field(..., alias="createdAt")


def frame(event: ServerEvent | ClientEvent | str, data: Any = None) -> dict[str, Any]:
    """Build a JSON-ready frame dict."""

    name = event.value if isinstance(event, enum.Enum) else event
    return {"type": name, "data": data}
