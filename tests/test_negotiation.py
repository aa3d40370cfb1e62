"""Tests for the client-side negotiation state machine."""
from __future__ import annotations

import pytest
from conftest import FakeCapture, FakeChannel

from callroom.client.negotiation import (
    AnswerReceived,
    CallState,
    DataChannelAccepted,
    IceCandidateReceived,
    IceStateChanged,
    NegotiationController,
    OfferReceived,
    PeerJoined,
    PeerLeft,
)
from callroom.core.errors import MediaAcquisitionFailed, NegotiationTransportError
from callroom.schemas.transcripts import TranscriptMessage

OFFER = {"type": "offer", "sdp": "remote-offer"}
ANSWER = {"type": "answer", "sdp": "remote-answer"}


@pytest.fixture
def controller(capture, peer_factory, signaling) -> NegotiationController:
    return NegotiationController(capture, peer_factory, signaling, data_channel_label="transcript")


@pytest.mark.asyncio
async def test_start_call_acquires_media_and_waits_for_peer(controller, capture, peer_factory, signaling):
    states: list[CallState] = []
    controller.on_state_change(states.append)

    await controller.start_call()

    assert states == [CallState.CONNECTING]
    assert controller.local_media is capture.acquired[0]
    assert peer_factory.last.media == [capture.acquired[0]]
    assert controller.data_channel.label == "transcript"
    assert signaling.sent == []


@pytest.mark.asyncio
async def test_start_call_is_ignored_while_connecting(controller, capture, peer_factory):
    await controller.start_call()
    await controller.start_call()

    assert len(capture.acquired) == 1
    assert len(peer_factory.links) == 1


@pytest.mark.asyncio
async def test_peer_joined_triggers_offer_from_caller(controller, signaling):
    await controller.start_call()

    await controller.dispatch(PeerJoined("peer"))

    assert signaling.sent == [("offer", "peer", {"type": "offer", "sdp": "offer-sdp"})]
    assert controller.remote_participant_id == "peer"


@pytest.mark.asyncio
async def test_start_call_offers_when_peer_already_known(controller, signaling):
    await controller.dispatch(PeerJoined("peer"))
    assert signaling.sent == []

    await controller.start_call()

    assert signaling.of_kind("offer") == [("offer", "peer", {"type": "offer", "sdp": "offer-sdp"})]


@pytest.mark.asyncio
async def test_offer_is_answered_and_answer_applied(controller, peer_factory, signaling):
    await controller.dispatch(OfferReceived("caller", OFFER))

    link = peer_factory.last
    assert link.remote_description == OFFER
    assert link.channels == []
    assert signaling.sent == [("answer", "caller", {"type": "answer", "sdp": "answer-sdp"})]


@pytest.mark.asyncio
async def test_offer_before_media_then_start_call_attaches_media(controller, capture, peer_factory, signaling):
    await controller.dispatch(OfferReceived("caller", OFFER))
    assert peer_factory.last.media == []

    await controller.start_call()

    assert len(peer_factory.links) == 1
    assert peer_factory.last.media == [capture.acquired[0]]
    assert signaling.of_kind("offer") == [("offer", "caller", {"type": "offer", "sdp": "offer-sdp"})]


@pytest.mark.asyncio
async def test_candidates_are_buffered_until_remote_description(controller, peer_factory):
    await controller.start_call()
    await controller.dispatch(PeerJoined("peer"))
    candidate = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}

    await controller.dispatch(IceCandidateReceived("peer", candidate))
    assert peer_factory.last.candidates == []

    await controller.dispatch(AnswerReceived("peer", ANSWER))
    assert peer_factory.last.candidates == [candidate]


@pytest.mark.asyncio
async def test_candidates_before_any_link_are_applied_after_offer(controller, peer_factory):
    candidate = {"candidate": "candidate:2", "sdpMid": "0", "sdpMLineIndex": 0}

    await controller.dispatch(IceCandidateReceived("caller", candidate))
    await controller.dispatch(OfferReceived("caller", OFFER))

    assert peer_factory.last.candidates == [candidate]


@pytest.mark.asyncio
async def test_duplicate_candidates_are_applied_once(controller, peer_factory):
    candidate = {"candidate": "candidate:3", "sdpMid": "0", "sdpMLineIndex": 0}
    await controller.dispatch(OfferReceived("caller", OFFER))

    await controller.dispatch(IceCandidateReceived("caller", candidate))
    await controller.dispatch(IceCandidateReceived("caller", dict(candidate)))

    assert peer_factory.last.candidates == [candidate]


@pytest.mark.asyncio
async def test_ice_state_drives_call_state(controller):
    await controller.start_call()

    await controller.dispatch(IceStateChanged("connected"))
    assert controller.state is CallState.CONNECTED

    await controller.dispatch(IceStateChanged("disconnected"))
    assert controller.state is CallState.DISCONNECTED
    assert controller.last_error is None

    await controller.dispatch(IceStateChanged("completed"))
    assert controller.state is CallState.CONNECTED

    await controller.dispatch(IceStateChanged("failed"))
    assert controller.state is CallState.DISCONNECTED
    assert isinstance(controller.last_error, NegotiationTransportError)


@pytest.mark.asyncio
async def test_link_callbacks_report_through_handlers(controller, peer_factory):
    await controller.start_call()

    await peer_factory.last.handlers.on_ice_state_change("connected")
    await peer_factory.last.handlers.on_remote_track("remote-track")

    assert controller.state is CallState.CONNECTED
    assert controller.remote_media == "remote-track"


@pytest.mark.asyncio
async def test_local_candidates_are_sent_to_remote(controller, peer_factory, signaling):
    await controller.start_call()
    await controller.dispatch(PeerJoined("peer"))

    await peer_factory.last.handlers.on_ice_candidate({"candidate": "candidate:9"})

    assert signaling.of_kind("ice-candidate") == [("ice-candidate", "peer", {"candidate": "candidate:9"})]


@pytest.mark.asyncio
async def test_media_failure_moves_to_error(peer_factory, signaling):
    controller = NegotiationController(FakeCapture(error=PermissionError("denied")), peer_factory, signaling)

    with pytest.raises(MediaAcquisitionFailed):
        await controller.start_call()

    assert controller.state is CallState.ERROR
    assert peer_factory.links == []

    await controller.dispatch(PeerJoined("peer"))
    assert signaling.sent == []


@pytest.mark.asyncio
async def test_toggle_mute_flips_track_enabled(controller):
    assert await controller.toggle_mute() is False

    await controller.start_call()

    assert await controller.toggle_mute() is True
    assert controller.local_media.enabled is False
    assert controller.is_muted
    assert await controller.toggle_mute() is False
    assert controller.local_media.enabled is True


@pytest.mark.asyncio
async def test_audio_level_follows_local_media(controller, capture):
    assert controller.audio_level == 0.0

    await controller.start_call()
    capture.acquired[0].audio_level = 0.4
    assert controller.audio_level == 0.4

    await controller.end_call()
    assert controller.audio_level == 0.0


@pytest.mark.asyncio
async def test_end_call_releases_everything(controller, capture, peer_factory):
    await controller.start_call()
    await controller.dispatch(PeerJoined("peer"))
    link = peer_factory.last
    channel = controller.data_channel

    await controller.end_call()

    assert controller.state is CallState.IDLE
    assert capture.acquired[0].stopped
    assert link.closed
    assert channel.closed
    assert controller.local_media is None
    assert controller.remote_participant_id is None
    assert controller.data_channel is None


@pytest.mark.asyncio
async def test_peer_left_tears_down_link_and_allows_a_new_peer(controller, peer_factory, signaling):
    await controller.start_call()
    await controller.dispatch(PeerJoined("first"))
    await controller.dispatch(IceStateChanged("connected"))
    old_link = peer_factory.last

    await controller.dispatch(PeerLeft("first"))

    assert old_link.closed
    assert controller.state is CallState.DISCONNECTED
    assert controller.local_media is not None

    await controller.dispatch(PeerJoined("second"))

    assert peer_factory.last is not old_link
    assert signaling.of_kind("offer")[-1][1] == "second"


@pytest.mark.asyncio
async def test_peer_left_for_unknown_participant_is_ignored(controller, peer_factory):
    await controller.start_call()
    await controller.dispatch(PeerJoined("peer"))

    await controller.dispatch(PeerLeft("stranger"))

    assert not peer_factory.last.closed


@pytest.mark.asyncio
async def test_stale_link_callbacks_are_ignored(controller, peer_factory):
    await controller.start_call()
    await controller.dispatch(PeerJoined("peer"))
    stale = peer_factory.last
    await controller.dispatch(PeerLeft("peer"))

    await stale.handlers.on_ice_state_change("connected")

    assert controller.state is CallState.DISCONNECTED


@pytest.mark.asyncio
async def test_answerer_adopts_offered_data_channel(controller):
    await controller.dispatch(OfferReceived("caller", OFFER))
    channel = FakeChannel("transcript")
    received: list[TranscriptMessage] = []
    controller.on_transcript(received.append)

    await controller.dispatch(DataChannelAccepted(channel))
    channel.deliver(TranscriptMessage(id="t1", text="hello", is_final=True).to_wire())
    channel.deliver("{not json")

    assert controller.data_channel is channel
    assert [message.text for message in received] == ["hello"]


@pytest.mark.asyncio
async def test_send_transcript_requires_open_channel(controller):
    message = TranscriptMessage(id="t1", text="hi", is_final=False)
    assert controller.send_transcript(message) is False

    await controller.start_call()
    channel = controller.data_channel
    assert controller.send_transcript(message) is True
    assert TranscriptMessage.from_wire(channel.sent[0]).text == "hi"

    channel.is_open = False
    assert controller.send_transcript(message) is False
