"""Client-side WebRTC negotiation state machine.

One ``NegotiationController`` exists per call. Every input (user actions,
signaling messages, transport callbacks) is an event dataclass passed through
``dispatch``; the convenience methods below only wrap that call.

    idle -> connecting -> connected <-> disconnected
    any -> error      (local media could not be acquired)
    any -> idle       (end_call)
"""
from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import ValidationError

from ..core.config import settings
from ..core.errors import MediaAcquisitionFailed, NegotiationTransportError
from ..schemas.transcripts import TranscriptMessage
from .ports import (
    AudioConstraints,
    DataChannel,
    LocalMedia,
    MediaCapture,
    PeerLink,
    PeerLinkFactory,
    PeerLinkHandlers,
    SignalingChannel,
)

logger = logging.getLogger(__name__)


class CallState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


ICE_CONNECTED_STATES = frozenset({"connected", "completed"})
ICE_DISCONNECTED_STATES = frozenset({"disconnected", "failed", "closed"})


@dataclass(frozen=True, slots=True)
class NegotiationEvent:
    """Base class for inputs to the state machine."""


@dataclass(frozen=True, slots=True)
class StartCall(NegotiationEvent):
    pass


@dataclass(frozen=True, slots=True)
class EndCall(NegotiationEvent):
    pass


@dataclass(frozen=True, slots=True)
class ToggleMute(NegotiationEvent):
    pass


@dataclass(frozen=True, slots=True)
class PeerJoined(NegotiationEvent):
    user_id: str


@dataclass(frozen=True, slots=True)
class PeerLeft(NegotiationEvent):
    user_id: str


@dataclass(frozen=True, slots=True)
class OfferReceived(NegotiationEvent):
    user_id: str
    description: dict


@dataclass(frozen=True, slots=True)
class AnswerReceived(NegotiationEvent):
    user_id: str
    description: dict


@dataclass(frozen=True, slots=True)
class IceCandidateReceived(NegotiationEvent):
    user_id: str
    candidate: dict


@dataclass(frozen=True, slots=True)
class IceStateChanged(NegotiationEvent):
    state: str


@dataclass(frozen=True, slots=True)
class LocalIceCandidate(NegotiationEvent):
    candidate: dict


@dataclass(frozen=True, slots=True)
class RemoteTrack(NegotiationEvent):
    track: Any


@dataclass(frozen=True, slots=True)
class DataChannelAccepted(NegotiationEvent):
    channel: DataChannel


StateListener = Callable[[CallState], None]
TranscriptListener = Callable[[TranscriptMessage], None]


class NegotiationController:
    """Own one peer link and drive the offer/answer/ICE exchange for it."""

    def __init__(
        self,
        media: MediaCapture,
        peer_factory: PeerLinkFactory,
        signaling: SignalingChannel,
        *,
        constraints: AudioConstraints | None = None,
        data_channel_label: str | None = None,
    ) -> None:
        self._media = media
        self._peer_factory = peer_factory
        self._signaling = signaling
        self._constraints = constraints or AudioConstraints()
        self._channel_label = data_channel_label or settings.data_channel_label

        self._state = CallState.IDLE
        self._local_media: Optional[LocalMedia] = None
        self._remote_media: Any = None
        self._remote_id: Optional[str] = None
        self._link: Optional[PeerLink] = None
        self._data_channel: Optional[DataChannel] = None
        self._generation = 0
        self._pending_candidates: list[dict] = []
        self._seen_candidates: set[str] = set()
        self._is_muted = False
        self.last_error: Exception | None = None

        self._state_listeners: list[StateListener] = []
        self._transcript_listeners: list[TranscriptListener] = []

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def local_media(self) -> Optional[LocalMedia]:
        return self._local_media

    @property
    def remote_media(self) -> Any:
        return self._remote_media

    @property
    def remote_participant_id(self) -> Optional[str]:
        return self._remote_id

    @property
    def data_channel(self) -> Optional[DataChannel]:
        return self._data_channel

    @property
    def is_muted(self) -> bool:
        return self._is_muted

    @property
    def audio_level(self) -> float:
        return self._local_media.audio_level if self._local_media is not None else 0.0

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def on_transcript(self, listener: TranscriptListener) -> None:
        self._transcript_listeners.append(listener)

    async def start_call(self) -> None:
        await self.dispatch(StartCall())

    async def end_call(self) -> None:
        await self.dispatch(EndCall())

    async def toggle_mute(self) -> bool:
        return await self.dispatch(ToggleMute())

    async def dispatch(self, event: NegotiationEvent) -> Any:
        """Apply one event to the state machine."""

        if isinstance(event, StartCall):
            await self._start_call()
        elif isinstance(event, EndCall):
            await self._end_call()
        elif isinstance(event, ToggleMute):
            return self._toggle_mute()
        elif isinstance(event, PeerJoined):
            await self._peer_joined(event.user_id)
        elif isinstance(event, PeerLeft):
            await self._peer_left(event.user_id)
        elif isinstance(event, OfferReceived):
            await self._offer_received(event.user_id, event.description)
        elif isinstance(event, AnswerReceived):
            await self._answer_received(event.user_id, event.description)
        elif isinstance(event, IceCandidateReceived):
            await self._ice_candidate_received(event.candidate)
        elif isinstance(event, IceStateChanged):
            self._ice_state_changed(event.state)
        elif isinstance(event, LocalIceCandidate):
            await self._local_ice_candidate(event.candidate)
        elif isinstance(event, RemoteTrack):
            logger.info("Remote track received")
            self._remote_media = event.track
        elif isinstance(event, DataChannelAccepted):
            self._adopt_channel(event.channel)
        else:
            raise TypeError(f"Unsupported negotiation event: {event!r}")
        return None

    def send_transcript(self, message: TranscriptMessage) -> bool:
        """Best-effort send over the data channel; False when it is not open."""

        channel = self._data_channel
        if channel is None or not channel.is_open:
            return False
        try:
            channel.send(message.to_wire())
        except Exception as exc:  # noqa: BLE001 - transcript relay is fire-and-forget
            logger.warning("Failed to send transcript %s: %s", message.id, exc)
            return False
        return True

    async def _start_call(self) -> None:
        if self._state in (CallState.CONNECTING, CallState.CONNECTED):
            logger.info("start_call ignored while %s", self._state.value)
            return

        self._set_state(CallState.CONNECTING)
        if self._local_media is None:
            try:
                media = await self._media.acquire(self._constraints)
            except Exception as exc:  # noqa: BLE001 - any capture failure aborts this attempt
                logger.error("Failed to start call: %s", exc)
                self.last_error = MediaAcquisitionFailed(str(exc) or exc.__class__.__name__)
                self._set_state(CallState.ERROR)
                raise self.last_error from exc
            self._local_media = media
            self._is_muted = not media.enabled

        if self._link is None:
            self._create_link(initiator=True)
        else:
            # An offer arrived while media was still being acquired.
            self._link.add_local_media(self._local_media)

        if self._remote_id is not None:
            await self._send_offer(self._remote_id)

    async def _end_call(self) -> None:
        self._generation += 1
        media, self._local_media = self._local_media, None
        if media is not None:
            media.stop()
        await self._teardown_link()
        self._remote_id = None
        self._is_muted = False
        self.last_error = None
        self._set_state(CallState.IDLE)

    def _toggle_mute(self) -> bool:
        media = self._local_media
        if media is None:
            return self._is_muted
        media.enabled = not media.enabled
        self._is_muted = not media.enabled
        logger.info("Local audio %s", "muted" if self._is_muted else "unmuted")
        return self._is_muted

    async def _peer_joined(self, user_id: str) -> None:
        logger.info("User joined: %s", user_id)
        self._remote_id = user_id
        if self._local_media is None or self._state in (CallState.IDLE, CallState.ERROR):
            return
        if self._link is None:
            self._create_link(initiator=True)
        await self._send_offer(user_id)

    async def _peer_left(self, user_id: str) -> None:
        logger.info("User left: %s", user_id)
        if self._remote_id != user_id:
            return
        self._generation += 1
        self._remote_id = None
        await self._teardown_link()
        if self._state in (CallState.CONNECTING, CallState.CONNECTED):
            self._set_state(CallState.DISCONNECTED)

    async def _offer_received(self, user_id: str, description: dict) -> None:
        logger.info("Received offer from: %s", user_id)
        self._remote_id = user_id
        if self._link is None:
            self._create_link(initiator=False)
        link = self._link
        answer = await link.create_answer(description)
        await self._flush_candidates()
        await self._signaling.send_signal("answer", user_id, answer)

    async def _answer_received(self, user_id: str, description: dict) -> None:
        logger.info("Received answer from: %s", user_id)
        if self._link is None:
            logger.warning("Answer from %s ignored: no peer connection", user_id)
            return
        await self._link.set_remote_description(description)
        await self._flush_candidates()

    async def _ice_candidate_received(self, candidate: dict) -> None:
        if not candidate:
            return
        key = json.dumps(candidate, sort_keys=True, default=str)
        if key in self._seen_candidates:
            logger.debug("Duplicate ICE candidate ignored")
            return
        self._seen_candidates.add(key)

        if self._link is None or not self._link.has_remote_description:
            logger.debug("Buffering ICE candidate until the remote description is set")
            self._pending_candidates.append(candidate)
            return
        await self._add_candidate(candidate)

    def _ice_state_changed(self, ice_state: str) -> None:
        logger.info("ICE connection state: %s", ice_state)
        if ice_state in ICE_CONNECTED_STATES:
            self._set_state(CallState.CONNECTED)
        elif ice_state in ICE_DISCONNECTED_STATES:
            if ice_state != "disconnected":
                self.last_error = NegotiationTransportError(f"ICE connection {ice_state}")
            if self._state is not CallState.IDLE:
                self._set_state(CallState.DISCONNECTED)

    async def _local_ice_candidate(self, candidate: dict) -> None:
        if candidate and self._remote_id is not None:
            await self._signaling.send_signal("ice-candidate", self._remote_id, candidate)

    def _create_link(self, *, initiator: bool) -> PeerLink:
        self._generation += 1
        link = self._peer_factory(self._handlers_for(self._generation))
        if self._local_media is not None:
            link.add_local_media(self._local_media)
        self._link = link
        self._seen_candidates = {json.dumps(c, sort_keys=True, default=str) for c in self._pending_candidates}
        if initiator:
            self._adopt_channel(link.create_data_channel(self._channel_label))
        return link

    def _handlers_for(self, generation: int) -> PeerLinkHandlers:
        def bind(event_type: Callable[[Any], NegotiationEvent]) -> Callable[[Any], Any]:
            async def handler(value: Any) -> None:
                if generation != self._generation:
                    logger.debug("Ignoring %s from a closed peer connection", event_type.__name__)
                    return
                await self.dispatch(event_type(value))

            return handler

        return PeerLinkHandlers(
            on_ice_candidate=bind(LocalIceCandidate),
            on_ice_state_change=bind(IceStateChanged),
            on_remote_track=bind(RemoteTrack),
            on_data_channel=bind(DataChannelAccepted),
        )

    async def _send_offer(self, target_id: str) -> None:
        offer = await self._link.create_offer()
        await self._signaling.send_signal("offer", target_id, offer)
        logger.info("Offer sent to %s", target_id)

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._add_candidate(candidate)

    async def _add_candidate(self, candidate: dict) -> None:
        try:
            await self._link.add_ice_candidate(candidate)
        except Exception as exc:  # noqa: BLE001 - a bad candidate never fails the call
            logger.warning("Failed to add ICE candidate: %s", exc)

    async def _teardown_link(self) -> None:
        channel, self._data_channel = self._data_channel, None
        if channel is not None:
            channel.close()
        link, self._link = self._link, None
        if link is not None:
            await link.close()
        self._remote_media = None
        self._pending_candidates.clear()
        self._seen_candidates.clear()

    def _adopt_channel(self, channel: DataChannel) -> None:
        previous = self._data_channel
        if previous is not None and previous is not channel:
            previous.close()
        self._data_channel = channel
        channel.on_message(self._on_channel_message)
        logger.info("Data channel %s attached", channel.label)

    def _on_channel_message(self, raw: str) -> None:
        try:
            message = TranscriptMessage.from_wire(raw)
        except ValidationError as exc:
            logger.warning("Dropping malformed data channel frame: %s", exc)
            return
        for listener in list(self._transcript_listeners):
            listener(message)

    def _set_state(self, state: CallState) -> None:
        if state is self._state:
            return
        logger.info("Call state %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            listener(state)
