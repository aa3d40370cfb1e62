"""aiortc implementations of the call client's media and peer-link ports."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..core.config import settings
from .ports import AudioConstraints, LocalMedia, PeerLinkFactory, PeerLinkHandlers

logger = logging.getLogger(__name__)


def build_configuration(ice_servers: list[str] | None = None) -> RTCConfiguration:
    urls = ice_servers if ice_servers is not None else settings.ice_servers
    return RTCConfiguration(iceServers=[RTCIceServer(urls=[url]) for url in urls])


async def _invoke(callback: Callable[[Any], Any], value: Any) -> None:
    result = callback(value)
    if inspect.isawaitable(result):
        await result


class MicrophoneTrack(MediaStreamTrack):
    """Audio track that zeroes samples while disabled instead of stopping.

    ``level`` follows the mean amplitude of the frames passed on, scaled to [0, 1].
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack) -> None:
        super().__init__()
        self._source = source
        self.enabled = True
        self.level = 0.0

    async def recv(self):
        frame = await self._source.recv()
        if not self.enabled:
            for plane in frame.planes:
                plane.update(bytes(plane.buffer_size))
            self.level = 0.0
        else:
            self.level = frame_level(frame)
        return frame

    def stop(self) -> None:
        super().stop()
        self._source.stop()
        self.level = 0.0


def frame_level(frame) -> float:
    samples = frame.to_ndarray()
    if not samples.size:
        return 0.0
    # Integer formats are scaled by their full range; float formats are already in [-1, 1].
    scale = float(1 << (8 * samples.dtype.itemsize - 1)) if samples.dtype.kind == "i" else 1.0
    return min(float(abs(samples.astype("float64")).mean()) / scale, 1.0)


class AiortcLocalMedia:
    """Microphone capture shared between the peer connection and the recognizer."""

    def __init__(self, source: MediaStreamTrack, player: MediaPlayer | None = None) -> None:
        self.track = MicrophoneTrack(source)
        self._player = player
        self._relay = MediaRelay()

    @property
    def enabled(self) -> bool:
        return self.track.enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self.track.enabled = value

    @property
    def audio_level(self) -> float:
        return self.track.level

    def subscribe(self) -> MediaStreamTrack:
        """Independent copy of the (mute-aware) stream for a second consumer."""

        return self._relay.subscribe(self.track)

    def stop(self) -> None:
        self.track.stop()
        self._player = None


class MicrophoneCapture:
    """Open the system microphone through FFmpeg (PulseAudio by default)."""

    def __init__(self, device: str | None = None, format: str | None = None, options: dict | None = None) -> None:
        self._device = device or settings.audio_device
        self._format = format or settings.audio_format
        self._options = dict(options or {})

    async def acquire(self, constraints: AudioConstraints) -> AiortcLocalMedia:
        logger.debug(
            "Capture constraints: echo_cancellation=%s noise_suppression=%s auto_gain_control=%s",
            constraints.echo_cancellation,
            constraints.noise_suppression,
            constraints.auto_gain_control,
        )
        loop = asyncio.get_running_loop()
        # Opening the device blocks while FFmpeg probes it.
        player = await loop.run_in_executor(
            None, lambda: MediaPlayer(self._device, format=self._format, options=self._options)
        )
        if player.audio is None:
            raise RuntimeError(f"No audio stream on capture device {self._device!r}")
        logger.info("Microphone opened: %s (%s)", self._device, self._format)
        return AiortcLocalMedia(player.audio, player)


class AiortcDataChannel:
    def __init__(self, channel: RTCDataChannel) -> None:
        self._channel = channel

    @property
    def label(self) -> str:
        return self._channel.label

    @property
    def is_open(self) -> bool:
        return self._channel.readyState == "open"

    def send(self, text: str) -> None:
        self._channel.send(text)

    def close(self) -> None:
        self._channel.close()

    def on_message(self, callback: Callable[[str], None]) -> None:
        @self._channel.on("message")
        def on_message(message: Any) -> None:
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            callback(message)


def _description(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


class AiortcPeerLink:
    """``PeerLink`` backed by ``RTCPeerConnection``.

    aiortc gathers candidates while setting the local description and embeds
    them in the SDP, so ``on_ice_candidate`` rarely fires; remote trickled
    candidates are still accepted.
    """

    def __init__(self, handlers: PeerLinkHandlers, *, ice_servers: list[str] | None = None) -> None:
        self._pc = RTCPeerConnection(configuration=build_configuration(ice_servers))
        self._handlers = handlers
        self._tracks: set[str] = set()

        @self._pc.on("icecandidate")
        async def on_ice_candidate(candidate) -> None:
            if candidate:
                await _invoke(
                    handlers.on_ice_candidate,
                    {
                        "candidate": f"candidate:{candidate_to_sdp(candidate)}",
                        "sdpMid": candidate.sdpMid,
                        "sdpMLineIndex": candidate.sdpMLineIndex,
                    },
                )

        @self._pc.on("iceconnectionstatechange")
        async def on_ice_connection_state_change() -> None:
            await _invoke(handlers.on_ice_state_change, self._pc.iceConnectionState)

        @self._pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            logger.info("Remote %s track received", track.kind)
            if track.kind == "audio":
                await _invoke(handlers.on_remote_track, track)

        @self._pc.on("datachannel")
        async def on_datachannel(channel: RTCDataChannel) -> None:
            await _invoke(handlers.on_data_channel, AiortcDataChannel(channel))

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    def add_local_media(self, media: LocalMedia) -> None:
        track: Optional[MediaStreamTrack] = getattr(media, "track", None)
        if track is None or track.id in self._tracks:
            return
        self._pc.addTrack(track)
        self._tracks.add(track.id)

    async def create_offer(self) -> dict:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return _description(self._pc.localDescription)

    async def create_answer(self, offer: dict) -> dict:
        await self.set_remote_description(offer)
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return _description(self._pc.localDescription)

    async def set_remote_description(self, description: dict) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate: dict) -> None:
        candidate_str = candidate.get("candidate", "")
        if not candidate_str:
            return
        if candidate_str.startswith("candidate:"):
            candidate_str = candidate_str[len("candidate:"):]
        ice_candidate = candidate_from_sdp(candidate_str)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice_candidate)

    def create_data_channel(self, label: str) -> AiortcDataChannel:
        return AiortcDataChannel(self._pc.createDataChannel(label))

    async def close(self) -> None:
        await self._pc.close()


def peer_link_factory(ice_servers: list[str] | None = None) -> PeerLinkFactory:
    def factory(handlers: PeerLinkHandlers) -> AiortcPeerLink:
        return AiortcPeerLink(handlers, ice_servers=ice_servers)

    return factory
