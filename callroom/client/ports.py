"""Capability interfaces the call client depends on.

The negotiation and transcript logic only talks to these protocols, so it can
run against aiortc, a Deepgram stream, or in-memory fakes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol


@dataclass(frozen=True, slots=True)
class AudioConstraints:
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True


class LocalMedia(Protocol):
    """Captured microphone audio owned by one call."""

    enabled: bool
    # Latest input level in [0, 1].
    audio_level: float

    def stop(self) -> None: ...


class MediaCapture(Protocol):
    async def acquire(self, constraints: AudioConstraints) -> LocalMedia: ...


class DataChannel(Protocol):
    """Text back-channel multiplexed on the peer connection."""

    @property
    def label(self) -> str: ...

    @property
    def is_open(self) -> bool: ...

    def send(self, text: str) -> None: ...

    def close(self) -> None: ...

    def on_message(self, callback: Callable[[str], None]) -> None: ...


@dataclass(slots=True)
class PeerLinkHandlers:
    """Callbacks a peer link reports transport events through."""

    on_ice_candidate: Callable[[dict], Any] = lambda candidate: None
    on_ice_state_change: Callable[[str], Any] = lambda state: None
    on_remote_track: Callable[[Any], Any] = lambda track: None
    on_data_channel: Callable[[DataChannel], Any] = lambda channel: None


class PeerLink(Protocol):
    """One peer connection as seen by the negotiation state machine.

    Session descriptions are plain ``{"type", "sdp"}`` dicts and candidates are
    ``RTCIceCandidateInit``-shaped dicts, exactly what travels over signaling.
    """

    @property
    def has_remote_description(self) -> bool: ...

    def add_local_media(self, media: LocalMedia) -> None: ...

    async def create_offer(self) -> dict: ...

    async def create_answer(self, offer: dict) -> dict: ...

    async def set_remote_description(self, description: dict) -> None: ...

    async def add_ice_candidate(self, candidate: dict) -> None: ...

    def create_data_channel(self, label: str) -> DataChannel: ...

    async def close(self) -> None: ...


PeerLinkFactory = Callable[[PeerLinkHandlers], PeerLink]


@dataclass(frozen=True, slots=True)
class SpeechEvent:
    """Base class for recognizer callbacks."""


@dataclass(frozen=True, slots=True)
class SpeechStarted(SpeechEvent):
    pass


@dataclass(frozen=True, slots=True)
class SpeechPartial(SpeechEvent):
    text: str


@dataclass(frozen=True, slots=True)
class SpeechFinal(SpeechEvent):
    text: str


@dataclass(frozen=True, slots=True)
class SegmentEnded(SpeechEvent):
    pass


@dataclass(frozen=True, slots=True)
class RecognizerError(SpeechEvent):
    code: str
    message: str = field(default="")


SpeechListener = Callable[[SpeechEvent], None]


class SpeechSource(Protocol):
    """A speech recognizer that reports through a single listener."""

    def set_listener(self, listener: Optional[SpeechListener]) -> None: ...

    async def start(self, language: str, media: Optional[LocalMedia] = None) -> None: ...

    async def stop(self) -> None: ...

    async def cancel(self) -> None: ...


class SignalingChannel(Protocol):
    """Outbound half of signaling used by the negotiation controller."""

    async def send_signal(self, kind: str, target_id: str, payload: Any) -> None: ...


SleepCallable = Callable[[float], Awaitable[None]]
