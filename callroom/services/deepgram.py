"""Deepgram streaming recognizer behind the ``SpeechSource`` port."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import urlencode

import av
from aiortc.mediastreams import MediaStreamError
from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed

from ..client.ports import (
    LocalMedia,
    RecognizerError,
    SegmentEnded,
    SpeechFinal,
    SpeechListener,
    SpeechPartial,
    SpeechStarted,
)
from ..core.config import settings

logger = logging.getLogger(__name__)

AudioChunk = bytes
TranscriptHandler = Callable[[dict], Awaitable[None]]
SAMPLE_RATE = 16000


class DeepgramStream:
    """Handle lifespan of a Deepgram streaming session."""

    def __init__(self, ws: ClientConnection, on_transcript: TranscriptHandler | None = None) -> None:
        self._ws = ws
        self._on_transcript = on_transcript
        self._output_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> "DeepgramStream":
        if self._on_transcript:
            self._output_task = asyncio.create_task(self._receive_loop())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._output_task:
            self._output_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._output_task
        await self._ws.close()

    @property
    def receiving(self) -> Optional[asyncio.Task[None]]:
        return self._output_task

    async def send_audio(self, chunk: AudioChunk) -> None:
        await self._ws.send(chunk)

    async def flush(self) -> None:
        await self._ws.send(json.dumps({"type": "CloseStream"}))

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                payload = json.loads(message)
                if self._on_transcript:
                    await self._on_transcript(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - the connection closing ends the session
            logger.warning("Deepgram receive loop ended: %s", exc)


@asynccontextmanager
async def connect_stream(
    on_transcript: TranscriptHandler | None = None,
    *,
    model: str | None = None,
    language: str = "en",
) -> AsyncIterator[DeepgramStream]:
    """Open a Deepgram live transcription connection."""

    if not settings.deepgram_api_key:
        raise RuntimeError("Deepgram API key missing")

    query = urlencode(
        {
            "model": model or settings.deepgram_model,
            "language": language,
            "encoding": "linear16",
            "sample_rate": SAMPLE_RATE,
            "interim_results": "true",
            "vad_events": "true",
        }
    )
    url = f"wss://api.deepgram.com/v1/listen?{query}"
    headers = {"Authorization": f"Token {settings.deepgram_api_key}"}
    async with ws_connect(url, additional_headers=headers) as ws:
        stream = DeepgramStream(ws, on_transcript=on_transcript)
        async with stream:
            yield stream


def speech_event(payload: dict) -> Any:
    """Map one Deepgram message onto a recognizer event, or None to skip it."""

    kind = payload.get("type", "Results")
    if kind == "SpeechStarted":
        return SpeechStarted()
    if kind == "Results":
        alternatives = payload.get("channel", {}).get("alternatives") or [{}]
        transcript = (alternatives[0].get("transcript") or "").strip()
        if not transcript:
            return None
        return SpeechFinal(transcript) if payload.get("is_final") else SpeechPartial(transcript)
    if kind == "Error":
        return RecognizerError("network", payload.get("description") or payload.get("message", ""))
    return None


class DeepgramSpeechSource:
    """Stream the local microphone to Deepgram and report discrete results.

    Deepgram never resends committed text, so results reach the segmenter
    already split; closing the socket from the far side ends the segment.
    """

    def __init__(self, *, model: str | None = None, connect: Callable[..., Any] | None = None) -> None:
        self._model = model
        self._connect = connect or connect_stream
        self._listener: Optional[SpeechListener] = None
        self._task: asyncio.Task[None] | None = None
        self._stream: DeepgramStream | None = None
        self._stopping = False

    def set_listener(self, listener: Optional[SpeechListener]) -> None:
        self._listener = listener

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, language: str, media: Optional[LocalMedia] = None) -> None:
        if self.running:
            raise RuntimeError("Deepgram recognizer already running")
        self._stopping = False
        ready = asyncio.Event()
        self._task = asyncio.create_task(self._run(language, media, ready))
        waiter = asyncio.create_task(ready.wait())
        await asyncio.wait({self._task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
        if self._task.done() and not ready.is_set():
            task, self._task = self._task, None
            task.result()
            raise RuntimeError("Deepgram stream closed before it was ready")

    async def stop(self) -> None:
        stream = self._stream
        self._stopping = True
        if stream is not None:
            with suppress(Exception):
                await stream.flush()
        await self._finish()

    async def cancel(self) -> None:
        self._stopping = True
        await self._finish()

    async def _finish(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _run(self, language: str, media: Optional[LocalMedia], ready: asyncio.Event) -> None:
        try:
            async with self._connect(self._on_payload, model=self._model, language=language) as stream:
                self._stream = stream
                ready.set()
                logger.info("Deepgram stream open (%s)", language)
                await self._stream_until_closed(media, stream)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            logger.info("Deepgram closed the stream: %s", exc)
        except Exception as exc:
            if not ready.is_set():
                raise
            logger.warning("Deepgram stream failed: %s", exc)
            self._emit(RecognizerError("network", str(exc)))
            return
        finally:
            self._stream = None
        if not self._stopping:
            self._emit(SegmentEnded())

    async def _stream_until_closed(self, media: Optional[LocalMedia], stream: DeepgramStream) -> None:
        track = media.subscribe() if media is not None and hasattr(media, "subscribe") else None
        pump = asyncio.create_task(self._pump(track, stream)) if track is not None else None
        receiving = stream.receiving
        pending = {task for task in (receiving, pump) if task is not None}
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if pump in done and not pump.cancelled():
                    # Re-raise a failed pump; a track that simply ended keeps the stream open.
                    pump.result()
                if receiving in done:
                    return
        finally:
            if pump is not None and not pump.done():
                pump.cancel()
                with suppress(asyncio.CancelledError):
                    await pump
            if track is not None:
                track.stop()

    async def _pump(self, track: Any, stream: DeepgramStream) -> None:
        resampler = av.AudioResampler(format="s16", layout="mono", rate=SAMPLE_RATE)
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.info("Local audio track ended")
                return
            try:
                for out in resampler.resample(frame):
                    await stream.send_audio(out.to_ndarray().tobytes())
            except ConnectionClosed:
                return

    async def _on_payload(self, payload: dict) -> None:
        event = speech_event(payload)
        if event is not None:
            self._emit(event)

    def _emit(self, event: Any) -> None:
        if self._listener is not None:
            self._listener(event)
