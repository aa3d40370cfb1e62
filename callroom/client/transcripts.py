"""Live transcript segmentation and reconciliation.

Recognizer backends disagree on what a callback contains: some resend the
whole utterance so far (even across their own automatic restarts), others emit
discrete results. ``TranscriptSegmenter`` keeps one open entry per stream,
overwrites it on every interim result, closes it on silence or end of segment,
and strips the already-committed prefix from cumulative results.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterator, Optional
from uuid import uuid4

from ..core.config import settings
from ..core.errors import RecognitionRestartExhausted, RecognitionTransientError
from ..core.timers import Scheduler, TimerHandle, loop_call_later
from ..schemas.transcripts import TranscriptMessage
from .ports import (
    LocalMedia,
    RecognizerError,
    SegmentEnded,
    SleepCallable,
    SpeechEvent,
    SpeechFinal,
    SpeechPartial,
    SpeechSource,
    SpeechStarted,
)

logger = logging.getLogger(__name__)

BENIGN_RECOGNIZER_ERRORS = frozenset({"no-speech", "aborted"})


class Speaker(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(slots=True)
class TranscriptEntry:
    id: str
    speaker: Speaker
    text: str
    is_final: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> TranscriptMessage:
        return TranscriptMessage(id=self.id, text=self.text, is_final=self.is_final, timestamp=self.timestamp)


EntryListener = Callable[[TranscriptEntry], None]


class TranscriptLog:
    """Ordered transcript history keyed by (speaker, entry id)."""

    def __init__(self) -> None:
        self._entries: Dict[tuple[Speaker, str], TranscriptEntry] = {}

    def __iter__(self) -> Iterator[TranscriptEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[TranscriptEntry]:
        return list(self._entries.values())

    def get(self, speaker: Speaker, entry_id: str) -> Optional[TranscriptEntry]:
        return self._entries.get((speaker, entry_id))

    def add(self, entry: TranscriptEntry) -> None:
        self._entries[(entry.speaker, entry.id)] = entry

    def clear(self) -> None:
        self._entries.clear()


class TranscriptSegmenter:
    """Turn a local recognizer's callback stream into stable transcript entries."""

    def __init__(
        self,
        source: SpeechSource,
        log: TranscriptLog | None = None,
        *,
        language: str | None = None,
        silence_timeout: float | None = None,
        restart_attempts: int | None = None,
        restart_base_delay: float | None = None,
        restart_step_delay: float | None = None,
        call_later: Scheduler | None = None,
        sleep: SleepCallable | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._source = source
        self.log = log if log is not None else TranscriptLog()
        self._language = language or settings.speech_language
        self._silence_timeout = (
            silence_timeout if silence_timeout is not None else settings.silence_timeout_ms / 1000
        )
        self._restart_attempts = (
            restart_attempts if restart_attempts is not None else settings.recognition_restart_attempts
        )
        self._restart_base_delay = (
            restart_base_delay if restart_base_delay is not None else settings.recognition_restart_base_ms / 1000
        )
        self._restart_step_delay = (
            restart_step_delay if restart_step_delay is not None else settings.recognition_restart_step_ms / 1000
        )
        self._call_later = call_later or loop_call_later
        self._sleep: Callable[[float], Awaitable[None]] = sleep or asyncio.sleep
        self._id_factory = id_factory or (lambda: uuid4().hex)

        self._listening = False
        self._media: Optional[LocalMedia] = None
        self._open_entry: Optional[TranscriptEntry] = None
        self._finalized_length = 0
        self._silence_timer: Optional[TimerHandle] = None
        self._restart_task: Optional[asyncio.Task[None]] = None
        self._entry_listeners: list[EntryListener] = []
        self._listening_listeners: list[Callable[[bool], None]] = []
        self.last_error: Exception | None = None

        source.set_listener(self.handle)

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def finalized_length(self) -> int:
        return self._finalized_length

    @property
    def open_entry(self) -> Optional[TranscriptEntry]:
        return self._open_entry

    @property
    def entries(self) -> list[TranscriptEntry]:
        return self.log.entries

    def on_entry(self, listener: EntryListener) -> None:
        self._entry_listeners.append(listener)

    def on_listening_change(self, listener: Callable[[bool], None]) -> None:
        self._listening_listeners.append(listener)

    async def start_listening(self, media: LocalMedia | None = None) -> None:
        if self._listening:
            return
        self._cancel_silence_timer()
        stale = self._close_open_entry(accumulate=False)
        if stale is not None:
            self._notify(stale)
        self._media = media
        self._finalized_length = 0
        self.last_error = None
        self._set_listening(True)
        try:
            await self._source.start(self._language, media)
        except Exception:
            logger.exception("Failed to start speech recognition")
            self._set_listening(False)
            raise
        logger.info("Speech recognition started (%s)", self._language)

    async def stop_listening(self) -> None:
        self._set_listening(False)
        self._cancel_silence_timer()
        task, self._restart_task = self._restart_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        entry = self._close_open_entry(accumulate=False)
        if entry is not None:
            self._notify(entry)
        self._finalized_length = 0
        self._media = None

        try:
            await self._source.stop()
            logger.info("Speech recognition stopped")
        except Exception as exc:  # noqa: BLE001 - stopping an idle recognizer may fail
            logger.info("Stop error (ignored): %s", exc)

    def clear_history(self) -> None:
        self._cancel_silence_timer()
        self._open_entry = None
        self._finalized_length = 0
        self.log.clear()

    def handle(self, event: SpeechEvent) -> None:
        """Apply one recognizer callback."""

        if isinstance(event, SpeechStarted):
            if self._listening:
                self._arm_silence_timer()
        elif isinstance(event, SpeechPartial):
            self._on_result(event.text, final=False)
        elif isinstance(event, SpeechFinal):
            self._on_result(event.text, final=True)
        elif isinstance(event, SegmentEnded):
            self._on_segment_ended()
        elif isinstance(event, RecognizerError):
            self._on_error(event)
        else:
            raise TypeError(f"Unsupported speech event: {event!r}")

    def _extract_new_text(self, full_text: str) -> str:
        if self._finalized_length == 0:
            return full_text
        new_text = full_text[self._finalized_length:].strip()
        # Some backends reset their buffer without telling us.
        return new_text or full_text

    def _on_result(self, full_text: str, *, final: bool) -> None:
        if not self._listening:
            return
        text = self._extract_new_text(full_text)
        if not text.strip():
            return

        entry = self._open_entry
        if entry is None:
            entry = TranscriptEntry(id=self._id_factory(), speaker=Speaker.LOCAL, text=text)
            self.log.add(entry)
            self._open_entry = entry
        else:
            entry.text = text

        if final:
            self._cancel_silence_timer()
            self._close_open_entry(accumulate=True)
        else:
            self._arm_silence_timer()
        self._notify(entry)

    def _on_silence(self) -> None:
        self._silence_timer = None
        if not self._listening or self._open_entry is None:
            return
        logger.info("Silence detected, finalizing current segment")
        entry = self._close_open_entry(accumulate=True)
        logger.debug("Finalized text length (cumulative): %d", self._finalized_length)
        self._notify(entry)

    def _on_segment_ended(self) -> None:
        logger.info("Speech recognition segment ended")
        self._cancel_silence_timer()
        entry = self._close_open_entry(accumulate=False)
        if entry is not None:
            self._notify(entry)
        if self._listening:
            # The backend's own text buffer starts over after a restart.
            self._finalized_length = 0
            self._schedule_restart()

    def _on_error(self, event: RecognizerError) -> None:
        if event.code in BENIGN_RECOGNIZER_ERRORS:
            logger.debug("Ignoring recognizer condition: %s", RecognitionTransientError(event.code))
            return
        logger.warning("Speech recognition error: %s %s", event.code, event.message)
        if self._listening:
            self._schedule_restart()

    def _close_open_entry(self, *, accumulate: bool) -> Optional[TranscriptEntry]:
        entry, self._open_entry = self._open_entry, None
        if entry is None:
            return None
        entry.is_final = True
        if accumulate:
            self._finalized_length += len(entry.text)
        return entry

    def _arm_silence_timer(self) -> None:
        self._cancel_silence_timer()
        self._silence_timer = self._call_later(self._silence_timeout, self._on_silence)

    def _cancel_silence_timer(self) -> None:
        timer, self._silence_timer = self._silence_timer, None
        if timer is not None:
            timer.cancel()

    def _schedule_restart(self) -> None:
        if self._restart_task is not None and not self._restart_task.done():
            return
        self._restart_task = asyncio.get_running_loop().create_task(self._restart())

    async def _restart(self) -> None:
        for attempt in range(self._restart_attempts):
            delay = self._restart_base_delay + self._restart_step_delay * attempt
            await self._quietly(self._source.stop)
            await self._quietly(self._source.cancel)
            await self._sleep(delay)
            if not self._listening:
                return
            try:
                await self._source.start(self._language, self._media)
            except Exception as exc:  # noqa: BLE001 - retried below
                logger.warning("Speech recognition restart failed (attempt %d): %s", attempt + 1, exc)
                continue
            logger.info("Speech recognition restarted")
            return

        self.last_error = RecognitionRestartExhausted(
            f"Recognizer did not restart after {self._restart_attempts} attempts"
        )
        logger.error("%s", self.last_error)
        self._cancel_silence_timer()
        entry = self._close_open_entry(accumulate=False)
        self._set_listening(False)
        if entry is not None:
            self._notify(entry)

    async def _quietly(self, call: Callable[[], Awaitable[None]]) -> None:
        try:
            await call()
        except Exception as exc:  # noqa: BLE001 - best-effort reset before restarting
            logger.debug("Ignored recognizer reset error: %s", exc)

    def _set_listening(self, listening: bool) -> None:
        if listening is self._listening:
            return
        self._listening = listening
        for listener in list(self._listening_listeners):
            listener(listening)

    def _notify(self, entry: TranscriptEntry) -> None:
        for listener in list(self._entry_listeners):
            listener(entry)


class RemoteTranscriptFeed:
    """Upsert transcripts received from the peer; the sender already segmented them."""

    def __init__(self, log: TranscriptLog) -> None:
        self.log = log
        self._listeners: list[EntryListener] = []

    def on_entry(self, listener: EntryListener) -> None:
        self._listeners.append(listener)

    def apply(self, message: TranscriptMessage) -> TranscriptEntry:
        entry = self.log.get(Speaker.REMOTE, message.id)
        if entry is None:
            entry = TranscriptEntry(
                id=message.id,
                speaker=Speaker.REMOTE,
                text=message.text,
                is_final=message.is_final,
                timestamp=message.timestamp,
            )
            self.log.add(entry)
        elif entry.is_final or (entry.text == message.text and entry.is_final == message.is_final):
            return entry
        else:
            entry.text = message.text
            entry.is_final = message.is_final

        for listener in list(self._listeners):
            listener(entry)
        return entry
