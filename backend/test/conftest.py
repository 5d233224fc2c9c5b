"""공용 테스트 픽스처와 가짜(fake) 협력자.

네트워크와 미디어 장치 없이 릴레이, 피어 세션, 컨트롤러를 검증하기 위한
가짜 연결/피어 연결/캡처/전송 계층을 제공합니다.
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional

import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError

from modules.channel import ChannelRegistry
from modules.session.media import CaptureError, LocalMedia, MediaCapture
from modules.session.tracks import GatedAudioTrack
from modules.signaling import SignalingRelay


# ============================================================
# Relay
# ============================================================

class FakeConnection:
    """send_json()만 가진 릴레이 연결."""

    def __init__(self):
        self.sent: List[dict] = []
        self.fail = False
        self.closed_with: Optional[int] = None

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def of_type(self, event_type: str) -> List[dict]:
        return [message for message in self.sent if message["type"] == event_type]

    def types(self) -> List[str]:
        return [message["type"] for message in self.sent]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return ChannelRegistry(clock=clock)


@pytest.fixture
def relay(registry, clock):
    return SignalingRelay(registry, clock=clock)


# ============================================================
# Media
# ============================================================

class FakeTrack(MediaStreamTrack):
    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind

    async def recv(self):
        raise MediaStreamError


def make_media(video: bool = False) -> LocalMedia:
    return LocalMedia(
        audio=GatedAudioTrack(FakeTrack("audio")),
        video=FakeTrack("video") if video else None,
    )


class FakeCapture(MediaCapture):
    """장치를 열지 않고 가짜 트랙을 돌려주는 캡처."""

    def __init__(self, events: Optional[list] = None):
        super().__init__()
        self.fail = False
        self.gate: Optional[asyncio.Event] = None
        self.acquired: List[LocalMedia] = []
        self.events = events if events is not None else []

    async def acquire(self, video: bool = False) -> LocalMedia:
        self.events.append(("acquire", video))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise CaptureError("no such device")
        media = make_media(video)
        self.acquired.append(media)
        return media


# ============================================================
# Peer connection
# ============================================================

class FakeSender:
    def __init__(self, track):
        self.track = track

    def replaceTrack(self, track) -> None:
        self.track = track


class FakeTransceiver:
    def __init__(self, kind: str, direction: str, track=None):
        self.kind = kind
        self.direction = direction
        self.sender = FakeSender(track)


class FakePeerConnection:
    """RTCPeerConnection의 시그널링 표면만 흉내내는 가짜 피어 연결."""

    _ids = itertools.count(1)

    def __init__(self):
        self.number = next(self._ids)
        self.connectionState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.candidates: list = []
        self.transceivers: List[FakeTransceiver] = []
        self.offers = 0
        self.closed = False
        self.handlers: Dict[str, Any] = {}

    def on(self, event: str):
        def decorator(fn):
            self.handlers[event] = fn
            return fn
        return decorator

    async def emit(self, event: str, *args):
        await self.handlers[event](*args)

    async def set_connection_state(self, state: str):
        self.connectionState = state
        await self.emit("connectionstatechange")

    async def createOffer(self) -> RTCSessionDescription:
        self.offers += 1
        return RTCSessionDescription(sdp=f"offer-{self.number}-{self.offers}", type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        if self.remoteDescription is None:
            raise RuntimeError("no remote description")
        return RTCSessionDescription(sdp=f"answer-{self.number}", type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        self.localDescription = description

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        self.remoteDescription = description

    async def addIceCandidate(self, candidate) -> None:
        if self.remoteDescription is None:
            raise RuntimeError("candidate before remote description")
        self.candidates.append(candidate)

    def addTrack(self, track) -> None:
        self.transceivers.append(FakeTransceiver(track.kind, "sendrecv", track))

    def addTransceiver(self, kind: str, direction: str = "sendrecv") -> None:
        self.transceivers.append(FakeTransceiver(kind, direction))

    def getTransceivers(self) -> List[FakeTransceiver]:
        return list(self.transceivers)

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"


class PeerConnectionFactory:
    """생성한 가짜 피어 연결을 기록하는 pc_factory."""

    def __init__(self):
        self.created: List[FakePeerConnection] = []

    def __call__(self) -> FakePeerConnection:
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


def candidate(port: int, mid: str = "0") -> dict:
    """candidate 시그널 payload."""
    return {
        "type": "candidate",
        "candidate": {
            "candidate": f"candidate:1 1 udp 2130706431 192.168.1.10 {port} typ host",
            "sdpMid": mid,
            "sdpMLineIndex": 0,
        },
    }


def applied_ports(pc: FakePeerConnection) -> List[int]:
    return [c.port for c in pc.candidates]


# ============================================================
# Controller transport
# ============================================================

class FakeTransport:
    """RelayClient 대신 전송 내용을 기록하는 전송 계층."""

    def __init__(self, events: Optional[list] = None):
        self.participant_id = "local-participant"
        self.sent: List[tuple] = []
        self.requests: List[tuple] = []
        self.responses: Dict[str, Any] = {}
        self.events = events if events is not None else []

    async def send(self, event_type: str, data: Any = None) -> bool:
        self.sent.append((event_type, data))
        self.events.append(("send", event_type))
        return True

    async def request(self, event_type: str, data: Any = None, timeout: Optional[float] = None) -> Any:
        self.requests.append((event_type, data))
        return self.responses.get(event_type)

    def of_type(self, event_type: str) -> List[Any]:
        return [data for sent_type, data in self.sent if sent_type == event_type]
