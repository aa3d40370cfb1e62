"""Assemble a ``CallSession`` from the aiortc and Deepgram adapters."""
from __future__ import annotations

from ..core.config import settings
from ..services.deepgram import DeepgramSpeechSource
from .rtc import MicrophoneCapture, peer_link_factory
from .session import CallSession
from .signaling import SignalingClient


def build_call_session(url: str | None = None) -> CallSession:
    return CallSession(
        SignalingClient(url or settings.signaling_url),
        MicrophoneCapture(),
        peer_link_factory(settings.ice_servers),
        DeepgramSpeechSource(model=settings.deepgram_model),
        language=settings.speech_language,
    )
