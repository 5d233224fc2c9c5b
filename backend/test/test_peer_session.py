"""PeerSession 상태 머신 테스트 (가짜 피어 연결 사용)."""

import asyncio

import pytest

from conftest import FakePeerConnection, FakeTrack, applied_ports, candidate, make_media
from modules.session.media import LocalMedia
from modules.session.peer_session import (
    InvalidTransition,
    PeerSession,
    PeerState,
    can_transition,
)


class Harness:
    """세션 하나와 그 세션이 보낸 시그널, 상태 전이 기록."""

    def __init__(self, media: LocalMedia = None, negotiation_timeout: float = None):
        self.sent = []
        self.transitions = []
        self.pc = FakePeerConnection()
        self.media = media or make_media()
        self.session = PeerSession(
            "remote-peer-1234",
            self.media,
            self.send_signal,
            pc_factory=lambda: self.pc,
            on_state_change=self.on_state_change,
            negotiation_timeout=negotiation_timeout,
        )

    async def send_signal(self, target, payload):
        self.sent.append((target, payload))

    async def on_state_change(self, session, old, new):
        self.transitions.append((old, new))

    def sent_types(self):
        return [payload["type"] for _, payload in self.sent]


@pytest.fixture
def harness():
    return Harness()


class TestTransitionTable:
    @pytest.mark.parametrize("current,new,allowed", [
        (PeerState.NEW, PeerState.HAVE_LOCAL_OFFER, True),
        (PeerState.NEW, PeerState.HAVE_REMOTE_OFFER, True),
        (PeerState.NEW, PeerState.CONNECTED, False),
        (PeerState.HAVE_LOCAL_OFFER, PeerState.CONNECTED, True),
        (PeerState.HAVE_LOCAL_OFFER, PeerState.HAVE_REMOTE_OFFER, False),
        (PeerState.HAVE_REMOTE_OFFER, PeerState.HAVE_LOCAL_ANSWER, True),
        (PeerState.HAVE_LOCAL_ANSWER, PeerState.CONNECTED, True),
        (PeerState.CONNECTED, PeerState.HAVE_LOCAL_OFFER, True),
        (PeerState.CONNECTED, PeerState.HAVE_REMOTE_OFFER, True),
        (PeerState.HAVE_REMOTE_OFFER, PeerState.FAILED, True),
        (PeerState.CONNECTED, PeerState.CLOSED, True),
        (PeerState.FAILED, PeerState.CLOSED, False),
        (PeerState.CLOSED, PeerState.NEW, False),
    ])
    def test_can_transition(self, current, new, allowed):
        assert can_transition(current, new) is allowed

    async def test_illegal_transition_raises(self, harness):
        with pytest.raises(InvalidTransition):
            await harness.session._transition(PeerState.CONNECTED)


class TestInitiator:
    async def test_offer_answer_connected(self, harness):
        session = harness.session

        await session.initiate()
        assert session.state == PeerState.HAVE_LOCAL_OFFER
        assert harness.sent == [("remote-peer-1234", {"type": "offer", "sdp": "offer-%d-1" % harness.pc.number})]

        await session.handle_signal({"type": "answer", "sdp": "remote-answer"})
        assert harness.pc.remoteDescription.sdp == "remote-answer"
        assert session.state == PeerState.HAVE_LOCAL_OFFER

        await harness.pc.set_connection_state("connected")
        assert session.state == PeerState.CONNECTED
        assert harness.transitions == [
            (PeerState.NEW, PeerState.HAVE_LOCAL_OFFER),
            (PeerState.HAVE_LOCAL_OFFER, PeerState.CONNECTED),
        ]

    async def test_transport_connected_before_answer_waits_for_answer(self, harness):
        session = harness.session
        await session.initiate()

        await harness.pc.set_connection_state("connected")
        assert session.state == PeerState.HAVE_LOCAL_OFFER

        await session.handle_signal({"type": "answer", "sdp": "remote-answer"})
        assert session.state == PeerState.CONNECTED

    async def test_initiate_with_released_capture_sends_nothing(self, harness):
        harness.media.stop()
        await harness.session.initiate()
        assert harness.sent == []
        assert harness.session.state == PeerState.NEW

    async def test_initiate_after_close_sends_nothing(self, harness):
        await harness.session.close()
        await harness.session.initiate()
        assert harness.sent == []
        assert harness.pc.offers == 0


class TestResponder:
    async def test_offer_produces_answer(self, harness):
        session = harness.session

        await session.handle_signal({"type": "offer", "sdp": "remote-offer"})

        assert session.state == PeerState.HAVE_LOCAL_ANSWER
        assert harness.sent_types() == ["answer"]
        assert session.remote_description == "remote-offer"

        await harness.pc.set_connection_state("connected")
        assert session.state == PeerState.CONNECTED


class TestCandidateBuffering:
    async def test_candidates_before_offer_are_buffered(self, harness):
        session = harness.session

        await session.handle_signal(candidate(5001))
        await session.handle_signal(candidate(5002))
        assert session.pending_candidates and applied_ports(harness.pc) == []

        await session.handle_signal({"type": "offer", "sdp": "remote-offer"})

        assert applied_ports(harness.pc) == [5001, 5002]
        assert session.pending_candidates == []

    async def test_buffered_and_direct_orders_are_equivalent(self):
        buffered, direct = Harness(), Harness()
        offer = {"type": "offer", "sdp": "remote-offer"}

        for payload in [candidate(5001), candidate(5002), offer]:
            await buffered.session.handle_signal(payload)
        for payload in [offer, candidate(5001), candidate(5002)]:
            await direct.session.handle_signal(payload)

        assert buffered.session.state == direct.session.state == PeerState.HAVE_LOCAL_ANSWER
        assert applied_ports(buffered.pc) == applied_ports(direct.pc) == [5001, 5002]
        assert buffered.sent_types() == direct.sent_types() == ["answer"]

    async def test_candidate_fields_are_applied(self, harness):
        await harness.session.handle_signal({"type": "offer", "sdp": "remote-offer"})
        await harness.session.handle_signal(candidate(6000, mid="audio"))

        applied = harness.pc.candidates[0]
        assert applied.sdpMid == "audio"
        assert applied.sdpMLineIndex == 0
        assert applied.ip == "192.168.1.10"

    async def test_end_of_candidates_is_ignored(self, harness):
        await harness.session.handle_signal({"type": "offer", "sdp": "remote-offer"})
        await harness.session.handle_signal({"type": "candidate", "candidate": {"candidate": ""}})
        assert harness.pc.candidates == []
        assert harness.session.state == PeerState.HAVE_LOCAL_ANSWER


class TestFailures:
    async def test_answer_without_offer_fails_session(self, harness):
        await harness.session.handle_signal({"type": "answer", "sdp": "stray"})

        assert harness.session.state == PeerState.FAILED
        assert harness.pc.closed

    async def test_malformed_payload_fails_session(self, harness):
        await harness.session.handle_signal({"type": "bogus"})
        assert harness.session.state == PeerState.FAILED

    async def test_failure_drops_buffer(self, harness):
        await harness.session.handle_signal(candidate(5001))
        await harness.session.handle_signal({"type": "answer", "sdp": "stray"})
        assert harness.session.pending_candidates == []

    async def test_transport_failure(self, harness):
        await harness.session.initiate()
        await harness.session.handle_signal({"type": "answer", "sdp": "remote-answer"})
        await harness.pc.set_connection_state("connected")

        await harness.pc.set_connection_state("failed")

        assert harness.session.state == PeerState.FAILED
        assert harness.transitions[-1] == (PeerState.CONNECTED, PeerState.FAILED)

    async def test_disconnected_is_transient(self, harness):
        await harness.session.handle_signal({"type": "offer", "sdp": "remote-offer"})
        await harness.pc.set_connection_state("connected")

        await harness.pc.set_connection_state("disconnected")

        assert harness.session.state == PeerState.CONNECTED


class TestClose:
    async def test_close_is_idempotent(self, harness):
        await harness.session.handle_signal(candidate(5001))

        await harness.session.close()
        await harness.session.close()

        assert harness.session.state == PeerState.CLOSED
        assert harness.session.pending_candidates == []
        assert harness.pc.closed
        assert harness.transitions == [(PeerState.NEW, PeerState.CLOSED)]

    async def test_signals_after_close_are_ignored(self, harness):
        await harness.session.close()
        await harness.session.handle_signal({"type": "offer", "sdp": "late-offer"})

        assert harness.session.state == PeerState.CLOSED
        assert harness.sent == []


class TestRenegotiation:
    async def connected(self, harness):
        await harness.session.handle_signal({"type": "offer", "sdp": "remote-offer"})
        await harness.pc.set_connection_state("connected")
        assert harness.session.state == PeerState.CONNECTED

    async def test_reoffer_from_connected(self, harness):
        await self.connected(harness)

        await harness.session.initiate()
        assert harness.session.state == PeerState.HAVE_LOCAL_OFFER

        # 전송 계층은 이미 연결되어 있으므로 answer 적용 즉시 CONNECTED
        await harness.session.handle_signal({"type": "answer", "sdp": "remote-answer-2"})
        assert harness.session.state == PeerState.CONNECTED

    async def test_remote_reoffer_from_connected(self, harness):
        await self.connected(harness)

        await harness.session.handle_signal({"type": "offer", "sdp": "remote-offer-2"})

        assert harness.session.state == PeerState.CONNECTED
        assert harness.sent_types() == ["answer", "answer"]

    async def test_new_kind_requires_renegotiation(self, harness):
        await self.connected(harness)

        assert await harness.session.apply_local_track(FakeTrack("video")) is True
        assert [t.kind for t in harness.pc.getTransceivers()] == ["audio", "video"]

    async def test_same_kind_is_replaced_in_place(self, harness):
        await self.connected(harness)
        replacement = FakeTrack("audio")

        assert await harness.session.apply_local_track(replacement) is False
        assert harness.pc.getTransceivers()[0].sender.track is replacement

    async def test_detach_video(self):
        harness = Harness(make_media(video=True))
        await harness.session.detach_local_kind("video")

        video = [t for t in harness.pc.getTransceivers() if t.kind == "video"][0]
        assert video.sender.track is None
        assert await harness.session.apply_local_track(FakeTrack("video")) is False


class TestReceiveOnly:
    async def test_receive_only_adds_recvonly_audio(self):
        harness = Harness(LocalMedia.receive_only())

        transceivers = harness.pc.getTransceivers()
        assert [(t.kind, t.direction) for t in transceivers] == [("audio", "recvonly")]

    async def test_capture_after_receive_only_switches_direction(self):
        harness = Harness(LocalMedia.receive_only())

        assert await harness.session.apply_local_track(FakeTrack("audio")) is True
        assert harness.pc.getTransceivers()[0].direction == "sendrecv"


class TestNegotiationTimeout:
    async def test_lost_answer_fails_session(self):
        harness = Harness(negotiation_timeout=0.05)
        await harness.session.initiate()
        assert harness.session.state == PeerState.HAVE_LOCAL_OFFER

        # answer가 유실되어 도착하지 않음
        await asyncio.sleep(0.15)

        assert harness.session.state == PeerState.FAILED
        assert harness.pc.closed
        assert harness.transitions[-1] == (PeerState.HAVE_LOCAL_OFFER, PeerState.FAILED)

    async def test_responder_without_transport_times_out(self):
        harness = Harness(negotiation_timeout=0.05)
        await harness.session.handle_signal({"type": "offer", "sdp": "remote-offer"})
        assert harness.session.state == PeerState.HAVE_LOCAL_ANSWER

        await asyncio.sleep(0.15)

        assert harness.session.state == PeerState.FAILED

    async def test_connected_cancels_timer(self):
        harness = Harness(negotiation_timeout=0.05)
        await harness.session.initiate()
        await harness.session.handle_signal({"type": "answer", "sdp": "remote-answer"})
        await harness.pc.set_connection_state("connected")

        await asyncio.sleep(0.15)

        assert harness.session.state == PeerState.CONNECTED
        assert not harness.pc.closed

    async def test_close_cancels_timer(self):
        harness = Harness(negotiation_timeout=0.05)
        await harness.session.initiate()
        await harness.session.close()

        await asyncio.sleep(0.15)

        assert harness.session.state == PeerState.CLOSED
        assert harness.transitions[-1] == (PeerState.HAVE_LOCAL_OFFER, PeerState.CLOSED)
