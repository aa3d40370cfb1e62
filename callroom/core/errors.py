"""Error taxonomy shared by the signaling server and the call clients."""
from __future__ import annotations


class CallroomError(RuntimeError):
    """Base class for errors scoped to a single room or call."""


class RoomError(CallroomError):
    """Room lifecycle failure reported to the joining client."""

    def __init__(self, room_id: str, message: str) -> None:
        super().__init__(message)
        self.room_id = room_id


class RoomNotFoundError(RoomError):
    """Raised when a room id does not exist (or was already cleaned up)."""

    def __init__(self, room_id: str) -> None:
        super().__init__(room_id, "Room not found")


class RoomFullError(RoomError):
    """Raised when a room already holds its maximum number of participants."""

    def __init__(self, room_id: str) -> None:
        super().__init__(room_id, "Room is full")


class MediaAcquisitionFailed(CallroomError):
    """Local audio capture could not be acquired; the call attempt is aborted."""


class NegotiationTransportError(CallroomError):
    """ICE transport failed or closed underneath an established call."""


class RecognitionTransientError(CallroomError):
    """Benign recognizer condition such as no speech or an aborted session."""


class RecognitionRestartExhausted(CallroomError):
    """The speech recognizer could not be restarted within the retry budget."""


class SignalingError(CallroomError):
    """The signaling server rejected a request or the connection went away."""
