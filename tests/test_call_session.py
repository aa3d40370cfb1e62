"""End-to-end call flow between two sessions over an in-process relay."""
from __future__ import annotations

import inspect
from typing import Any

import pytest
from conftest import (
    FakeCapture,
    FakeChannel,
    FakePeerFactory,
    FakePeerLink,
    FakeScheduler,
    FakeSpeechSource,
    RecordingSleep,
)

from callroom.client.negotiation import CallState
from callroom.client.ports import SpeechFinal, SpeechPartial
from callroom.client.session import CallSession
from callroom.client.transcripts import Speaker
from callroom.core.errors import RoomFullError, RoomNotFoundError
from callroom.schemas.signaling import RelayRequest, RoomJoined, ServerEvent, frame
from callroom.services.rooms import InMemoryRoomRegistry
from callroom.services.signaling import SignalingConnection, SignalingRelay


class PairedChannel(FakeChannel):
    """Channel whose sends land on the other end's message callback."""

    peer: "PairedChannel"

    def send(self, text: str) -> None:
        super().send(text)
        if self.peer.is_open and self.peer._callback is not None:
            self.peer._callback(text)


class PairedPeerLink(FakePeerLink):
    def create_data_channel(self, label: str) -> PairedChannel:
        local, remote = PairedChannel(label), PairedChannel(label)
        local.peer, remote.peer = remote, local
        self.channels.append(local)
        self.remote_end = remote
        return local


class LoopbackSignaling:
    """Signaling client stand-in that talks to a relay in the same process."""

    def __init__(self, relay: SignalingRelay, user_id: str) -> None:
        self.relay = relay
        self.user_id = user_id
        self.room_id: str | None = None
        self.is_connected = False
        self._handlers: dict[str, list] = {}

    def on(self, event: Any, handler) -> None:
        name = event.value if isinstance(event, ServerEvent) else event
        self._handlers.setdefault(name, []).append(handler)

    async def connect(self) -> str:
        await self.relay.register(SignalingConnection(self.user_id, self._deliver))
        self.is_connected = True
        return self.user_id

    async def close(self) -> None:
        await self.relay.unregister(self.user_id)
        result = self.relay.rooms.drop(self.user_id)
        if result is not None:
            await self.relay.notify(result.remaining_participants, frame(ServerEvent.USER_LEFT, self.user_id))
        self.is_connected = False

    async def create_room(self) -> str:
        return self.relay.rooms.create()

    async def join_room(self, room_id: str) -> RoomJoined:
        result = self.relay.rooms.join(room_id, self.user_id)
        self.room_id = room_id
        if result.left is not None:
            await self.relay.notify(result.left.remaining_participants, frame(ServerEvent.USER_LEFT, self.user_id))
        await self.relay.notify(result.existing_participants, frame(ServerEvent.USER_JOINED, self.user_id))
        return RoomJoined(room_id=room_id, participants=result.existing_participants)

    async def leave_room(self, room_id: str | None = None) -> None:
        remaining = self.relay.rooms.leave(room_id or self.room_id, self.user_id)
        self.room_id = None
        await self.relay.notify(remaining, frame(ServerEvent.USER_LEFT, self.user_id))

    async def send_signal(self, kind: str, target_id: str, payload: Any) -> None:
        request = RelayRequest(room_id=self.room_id, target_user_id=target_id, payload=payload)
        await self.relay.relay(kind, self.user_id, request)

    async def _deliver(self, message: dict) -> None:
        for handler in self._handlers.get(message["type"], []):
            result = handler(message["data"])
            if inspect.isawaitable(result):
                await result


class Participant:
    def __init__(self, relay: SignalingRelay, user_id: str) -> None:
        self.capture = FakeCapture()
        self.peers = FakePeerFactory(PairedPeerLink)
        self.speech = FakeSpeechSource()
        self.signaling = LoopbackSignaling(relay, user_id)
        self.session = CallSession(
            self.signaling,
            self.capture,
            self.peers,
            self.speech,
            language="ja-JP",
            segmenter_options={"call_later": FakeScheduler(), "sleep": RecordingSleep()},
        )


@pytest.fixture
def relay(scheduler) -> SignalingRelay:
    return SignalingRelay(InMemoryRoomRegistry(call_later=scheduler), require_membership=True)


@pytest.mark.asyncio
async def test_two_sessions_connect_and_exchange_transcripts(relay):
    alice = Participant(relay, "alice")
    bob = Participant(relay, "bob")
    await alice.session.connect()
    await bob.session.connect()

    room_id = await alice.session.create_room()
    assert (await alice.session.join(room_id)).participants == []
    await alice.session.start_call()
    assert alice.session.state is CallState.CONNECTING

    joined = await bob.session.join(room_id)
    assert joined.participants == ["alice"]
    assert bob.session.room_id == room_id

    alice_link = alice.peers.last
    bob_link = bob.peers.last
    assert alice_link.local_description["type"] == "offer"
    assert bob_link.remote_description["type"] == "offer"
    assert alice_link.remote_description == {"type": "answer", "sdp": "answer-sdp"}

    await bob.session.start_call()
    await alice_link.handlers.on_ice_state_change("connected")
    await bob_link.handlers.on_ice_state_change("connected")
    await bob_link.handlers.on_data_channel(alice_link.remote_end)

    assert alice.session.state is CallState.CONNECTED
    assert bob.session.state is CallState.CONNECTED
    assert len(alice.peers.links) == 1
    assert len(bob.peers.links) == 1

    alice.speech.emit(SpeechPartial("こんにちは"))
    alice.speech.emit(SpeechPartial("こんにちは"))
    assert len(alice_link.channels[0].sent) == 1

    remote = [entry for entry in bob.session.transcripts if entry.speaker is Speaker.REMOTE]
    assert [(entry.text, entry.is_final) for entry in remote] == [("こんにちは", False)]

    bob.speech.emit(SpeechFinal("はい"))
    local_on_alice = [entry for entry in alice.session.transcripts if entry.speaker is Speaker.REMOTE]
    assert [(entry.text, entry.is_final) for entry in local_on_alice] == [("はい", True)]

    await alice.session.end_call()
    assert remote[0].is_final
    assert alice.session.state is CallState.IDLE
    assert alice.capture.acquired[0].stopped

    await alice.session.close()
    assert bob.session.state is CallState.DISCONNECTED
    assert relay.rooms.get(room_id).participants == ["bob"]


@pytest.mark.asyncio
async def test_call_proceeds_when_recognizer_fails(relay):
    alice = Participant(relay, "alice")
    alice.speech.fail_starts = 1
    await alice.session.connect()

    await alice.session.start_call()

    assert alice.session.state is CallState.CONNECTING
    assert not alice.session.segmenter.is_listening


@pytest.mark.asyncio
async def test_join_errors_surface_to_caller(relay):
    sessions = [Participant(relay, name) for name in ("a", "b", "c")]
    for participant in sessions:
        await participant.session.connect()

    with pytest.raises(RoomNotFoundError):
        await sessions[0].session.join("deadbeef")

    room_id = await sessions[0].session.create_room()
    await sessions[0].session.join(room_id)
    await sessions[1].session.join(room_id)
    with pytest.raises(RoomFullError):
        await sessions[2].session.join(room_id)
    assert sessions[2].session.room_id is None


@pytest.mark.asyncio
async def test_toggle_mute_and_clear_transcripts(relay):
    alice = Participant(relay, "alice")
    await alice.session.connect()
    await alice.session.start_call()

    assert await alice.session.toggle_mute() is True
    assert alice.session.is_muted

    alice.speech.emit(SpeechFinal("memo"))
    assert len(alice.session.transcripts) == 1
    alice.session.clear_transcripts()
    assert alice.session.transcripts == []
