"""One participant's view of a call: room, peer link and live transcripts."""
from __future__ import annotations

import logging
from typing import Any, Optional

from ..schemas.signaling import RoomJoined, ServerEvent
from .negotiation import (
    AnswerReceived,
    CallState,
    IceCandidateReceived,
    NegotiationController,
    OfferReceived,
    PeerJoined,
    PeerLeft,
)
from .ports import MediaCapture, PeerLinkFactory, SpeechSource
from .signaling import SignalingClient
from .transcripts import RemoteTranscriptFeed, TranscriptEntry, TranscriptLog, TranscriptSegmenter

logger = logging.getLogger(__name__)


class CallSession:
    """Wire signaling, negotiation and transcription together."""

    def __init__(
        self,
        signaling: SignalingClient,
        media: MediaCapture,
        peer_factory: PeerLinkFactory,
        speech: SpeechSource,
        *,
        language: str | None = None,
        segmenter_options: dict[str, Any] | None = None,
    ) -> None:
        self.signaling = signaling
        self.controller = NegotiationController(media, peer_factory, signaling)
        self.log = TranscriptLog()
        self.segmenter = TranscriptSegmenter(speech, self.log, language=language, **(segmenter_options or {}))
        self.remote = RemoteTranscriptFeed(self.log)
        self._room_id: Optional[str] = None
        self._last_sent: Optional[tuple[str, str, bool]] = None

        signaling.on(ServerEvent.USER_JOINED, self._on_user_joined)
        signaling.on(ServerEvent.USER_LEFT, self._on_user_left)
        signaling.on(ServerEvent.OFFER, self._on_offer)
        signaling.on(ServerEvent.ANSWER, self._on_answer)
        signaling.on(ServerEvent.ICE_CANDIDATE, self._on_ice_candidate)
        self.controller.on_transcript(self.remote.apply)
        self.segmenter.on_entry(self._publish)

    @property
    def state(self) -> CallState:
        return self.controller.state

    @property
    def room_id(self) -> Optional[str]:
        return self._room_id

    @property
    def is_muted(self) -> bool:
        return self.controller.is_muted

    @property
    def audio_level(self) -> float:
        return self.controller.audio_level

    @property
    def transcripts(self) -> list[TranscriptEntry]:
        return self.log.entries

    async def connect(self) -> str:
        return await self.signaling.connect()

    async def close(self) -> None:
        await self.end_call()
        if self._room_id is not None and self.signaling.is_connected:
            await self.leave()
        await self.signaling.close()
        self._room_id = None

    async def create_room(self) -> str:
        return await self.signaling.create_room()

    async def join(self, room_id: str) -> RoomJoined:
        joined = await self.signaling.join_room(room_id)
        self._room_id = joined.room_id
        logger.info("Joined room %s with %d other participant(s)", joined.room_id, len(joined.participants))
        return joined

    async def leave(self) -> None:
        room_id, self._room_id = self._room_id, None
        if room_id is not None:
            await self.signaling.leave_room(room_id)

    async def start_call(self) -> None:
        await self.controller.start_call()
        if self.segmenter.is_listening:
            return
        try:
            await self.segmenter.start_listening(self.controller.local_media)
        except Exception as exc:  # noqa: BLE001 - the call goes on without transcripts
            logger.warning("Transcription unavailable: %s", exc)

    async def end_call(self) -> None:
        # Stop recognition first so the closing entry still reaches the peer.
        await self.segmenter.stop_listening()
        await self.controller.end_call()

    async def toggle_mute(self) -> bool:
        return await self.controller.toggle_mute()

    def clear_transcripts(self) -> None:
        self.segmenter.clear_history()
        self._last_sent = None

    def _publish(self, entry: TranscriptEntry) -> None:
        key = (entry.id, entry.text, entry.is_final)
        if key == self._last_sent:
            return
        if self.controller.send_transcript(entry.to_message()):
            self._last_sent = key

    async def _on_user_joined(self, user_id: str) -> None:
        await self.controller.dispatch(PeerJoined(user_id))

    async def _on_user_left(self, user_id: str) -> None:
        await self.controller.dispatch(PeerLeft(user_id))

    async def _on_offer(self, data: dict) -> None:
        await self.controller.dispatch(OfferReceived(data["userId"], data["payload"]))

    async def _on_answer(self, data: dict) -> None:
        await self.controller.dispatch(AnswerReceived(data["userId"], data["payload"]))

    async def _on_ice_candidate(self, data: dict) -> None:
        await self.controller.dispatch(IceCandidateReceived(data["userId"], data["payload"]))
