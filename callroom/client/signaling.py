"""Websocket client for the signaling server."""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from contextlib import suppress
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from ..core.config import settings
from ..core.errors import RoomFullError, RoomNotFoundError, SignalingError
from ..schemas.signaling import ClientEvent, Frame, RelayRequest, RoomJoined, ServerEvent, frame

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Optional[Awaitable[None]]]
Connector = Callable[[str], Any]


class SignalingClient:
    """Speak the room/relay protocol over one persistent websocket."""

    def __init__(self, url: str | None = None, *, connector: Connector | None = None) -> None:
        self._url = url or settings.signaling_url
        self._connector = connector or ws_connect
        self._ws: Any = None
        self._receive_task: asyncio.Task[None] | None = None
        self._handlers: Dict[str, list[EventHandler]] = {}
        self._waiters: Dict[str, asyncio.Future[Any]] = {}
        self._connected: asyncio.Future[str] | None = None
        self.user_id: str | None = None
        self.room_id: str | None = None
        self._pending_room = ""

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self.user_id is not None

    def on(self, event: ServerEvent | str, handler: EventHandler) -> None:
        name = event.value if isinstance(event, ServerEvent) else event
        self._handlers.setdefault(name, []).append(handler)

    async def connect(self) -> str:
        """Open the socket and wait for the greeting carrying our participant id."""

        if self._ws is not None:
            raise SignalingError("Signaling client already connected")
        self._connected = asyncio.get_running_loop().create_future()
        self._ws = await self._connector(self._url)
        self._receive_task = asyncio.create_task(self._receive_loop())
        self.user_id = await self._connected
        logger.info("Connected to signaling server as %s", self.user_id)
        return self.user_id

    async def close(self) -> None:
        task, self._receive_task = self._receive_task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        self._fail_waiters(SignalingError("Signaling connection closed"))
        self.user_id = None
        self.room_id = None

    async def send(self, event: ClientEvent | str, data: Any = None) -> None:
        if self._ws is None:
            raise SignalingError("Signaling client is not connected")
        await self._ws.send(json.dumps(frame(event, data)))

    async def create_room(self) -> str:
        waiter = self._expect(ServerEvent.ROOM_CREATED.value)
        await self.send(ClientEvent.CREATE_ROOM)
        return await waiter

    async def join_room(self, room_id: str) -> RoomJoined:
        """Join a room; raises ``RoomNotFoundError`` or ``RoomFullError`` on rejection."""

        waiter = self._expect(ClientEvent.JOIN_ROOM.value)
        self._pending_room = room_id
        await self.send(ClientEvent.JOIN_ROOM, room_id)
        joined: RoomJoined = await waiter
        self.room_id = joined.room_id
        return joined

    async def leave_room(self, room_id: str | None = None) -> None:
        target = room_id or self.room_id
        if target is None:
            return
        await self.send(ClientEvent.LEAVE_ROOM, target)
        if target == self.room_id:
            self.room_id = None

    async def send_signal(self, kind: str, target_id: str, payload: Any) -> None:
        if self.room_id is None:
            raise SignalingError(f"Cannot send {kind} outside a room")
        request = RelayRequest(room_id=self.room_id, target_user_id=target_id, payload=payload)
        await self.send(kind, request.model_dump(by_alias=True))

    def _expect(self, key: str) -> asyncio.Future[Any]:
        if key in self._waiters and not self._waiters[key].done():
            raise SignalingError(f"A {key} request is already in flight")
        waiter: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._waiters[key] = waiter
        return waiter

    def _resolve(self, key: str, result: Any = None, error: Exception | None = None) -> bool:
        waiter = self._waiters.pop(key, None)
        if waiter is None or waiter.done():
            return False
        if error is not None:
            waiter.set_exception(error)
        else:
            waiter.set_result(result)
        return True

    def _fail_waiters(self, error: Exception) -> None:
        for key in list(self._waiters):
            self._resolve(key, error=error)
        if self._connected is not None and not self._connected.done():
            self._connected.set_exception(error)

    async def _receive_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    incoming = Frame.model_validate_json(raw)
                except ValidationError:
                    logger.warning("Ignoring malformed signaling frame")
                    continue
                await self._dispatch(incoming)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            logger.info("Signaling connection closed: %s", exc)
        finally:
            self._fail_waiters(SignalingError("Signaling connection closed"))

    async def _dispatch(self, incoming: Frame) -> None:
        event, data = incoming.type, incoming.data

        if event == ServerEvent.CONNECTED.value:
            if self._connected is not None and not self._connected.done():
                self._connected.set_result((data or {}).get("userId"))
        elif event == ServerEvent.ROOM_CREATED.value:
            self._resolve(event, result=data)
        elif event == ServerEvent.ROOM_JOINED.value:
            self._resolve(ClientEvent.JOIN_ROOM.value, result=RoomJoined.model_validate(data))
        elif event == ServerEvent.ROOM_FULL.value:
            self._resolve(ClientEvent.JOIN_ROOM.value, error=RoomFullError(self._pending_room))
        elif event == ServerEvent.ERROR.value:
            logger.warning("Signaling error: %s", data)
            room_id = self._pending_room
            not_found = str(RoomNotFoundError(room_id))
            error = RoomNotFoundError(room_id) if data == not_found else SignalingError(str(data))
            self._resolve(ClientEvent.JOIN_ROOM.value, error=error)

        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001 - one bad handler must not stop signaling
                logger.exception("Signaling handler for %s failed", event)
