"""Shared fakes for the call client and room registry tests."""
from __future__ import annotations

from typing import Any, Callable, Optional

import pytest

from callroom.client.ports import PeerLinkHandlers, SpeechEvent


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Manual clock: timers only run when a test fires them."""

    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled and not timer.fired]

    def fire_all(self) -> None:
        for timer in self.pending:
            timer.fired = True
            timer.callback()


class FakeMedia:
    def __init__(self) -> None:
        self.enabled = True
        self.audio_level = 0.0
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeCapture:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.acquired: list[FakeMedia] = []

    async def acquire(self, constraints) -> FakeMedia:
        if self.error is not None:
            raise self.error
        media = FakeMedia()
        self.acquired.append(media)
        return media


class FakeChannel:
    def __init__(self, label: str = "transcript", is_open: bool = True) -> None:
        self.label = label
        self.is_open = is_open
        self.sent: list[str] = []
        self.closed = False
        self._callback: Optional[Callable[[str], None]] = None

    def send(self, text: str) -> None:
        self.sent.append(text)

    def close(self) -> None:
        self.closed = True
        self.is_open = False

    def on_message(self, callback: Callable[[str], None]) -> None:
        self._callback = callback

    def deliver(self, raw: str) -> None:
        assert self._callback is not None
        self._callback(raw)


class FakePeerLink:
    def __init__(self, handlers: PeerLinkHandlers) -> None:
        self.handlers = handlers
        self.media: list[Any] = []
        self.remote_description: Optional[dict] = None
        self.local_description: Optional[dict] = None
        self.candidates: list[dict] = []
        self.channels: list[FakeChannel] = []
        self.closed = False

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    def add_local_media(self, media) -> None:
        if media not in self.media:
            self.media.append(media)

    async def create_offer(self) -> dict:
        self.local_description = {"type": "offer", "sdp": "offer-sdp"}
        return self.local_description

    async def create_answer(self, offer: dict) -> dict:
        self.remote_description = offer
        self.local_description = {"type": "answer", "sdp": "answer-sdp"}
        return self.local_description

    async def set_remote_description(self, description: dict) -> None:
        self.remote_description = description

    async def add_ice_candidate(self, candidate: dict) -> None:
        self.candidates.append(candidate)

    def create_data_channel(self, label: str) -> FakeChannel:
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    async def close(self) -> None:
        self.closed = True


class FakePeerFactory:
    def __init__(self, link_cls: type = FakePeerLink) -> None:
        self.link_cls = link_cls
        self.links: list[FakePeerLink] = []

    def __call__(self, handlers: PeerLinkHandlers) -> FakePeerLink:
        link = self.link_cls(handlers)
        self.links.append(link)
        return link

    @property
    def last(self) -> FakePeerLink:
        return self.links[-1]


class FakeSignaling:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, Any]] = []

    async def send_signal(self, kind: str, target_id: str, payload: Any) -> None:
        self.sent.append((kind, target_id, payload))

    def of_kind(self, kind: str) -> list[tuple[str, str, Any]]:
        return [item for item in self.sent if item[0] == kind]


class FakeSpeechSource:
    """Recognizer double; tests push events through ``emit``."""

    def __init__(self) -> None:
        self.listener: Optional[Callable[[SpeechEvent], None]] = None
        self.starts: list[tuple[str, Any]] = []
        self.stops = 0
        self.cancels = 0
        self.fail_starts = 0

    def set_listener(self, listener) -> None:
        self.listener = listener

    async def start(self, language: str, media=None) -> None:
        if self.fail_starts:
            self.fail_starts -= 1
            raise RuntimeError("recognizer unavailable")
        self.starts.append((language, media))

    async def stop(self) -> None:
        self.stops += 1

    async def cancel(self) -> None:
        self.cancels += 1

    def emit(self, event: SpeechEvent) -> None:
        assert self.listener is not None
        self.listener(event)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def signaling() -> FakeSignaling:
    return FakeSignaling()


@pytest.fixture
def peer_factory() -> FakePeerFactory:
    return FakePeerFactory()


@pytest.fixture
def capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture
def speech() -> FakeSpeechSource:
    return FakeSpeechSource()
