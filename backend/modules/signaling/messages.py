"""시그널링 와이어 메시지 정의.

릴레이와 클라이언트가 주고받는 JSON 메시지의 형태를 pydantic 모델로
정의합니다. 모든 메시지는 다음 봉투(envelope) 형태를 사용합니다.

    {"type": "<event>", "data": {...} | null, "requestId": "..."?}

requestId는 요청/응답 형태의 이벤트(scan-channels)에서만 사용되며
응답에 그대로 되돌려집니다.

시그널링 payload(offer/answer/candidate)는 태그드 유니온으로 정의되지만,
릴레이는 이를 해석하지 않고 그대로 전달합니다. 해석은 피어 세션
(modules/session/peer_session.py)에서만 수행됩니다.
"""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

# ============================================================
# 이벤트 이름
# ============================================================

# Client -> Server
JOIN_CHANNEL = "join-channel"
LEAVE_CHANNEL = "leave-channel"
SCAN_CHANNELS = "scan-channels"
SIGNAL = "signal"
VOICE_STATUS = "voice-status"
BROADCAST_SOURCE = "broadcast-source"
MESSAGE = "message"

# Server -> Client
CONNECTED = "connected"
JOINED = "joined"
PARTICIPANT_JOINED = "participant-joined"
PARTICIPANT_LEFT = "participant-left"
CHANNEL_UPDATE = "channel-update"
SCAN_RESULTS = "scan-results"
SOURCE_UPDATE = "source-update"
CHAT_MESSAGE = "chat-message"
ERROR = "error"


def envelope(event_type: str, data: Any = None, request_id: Optional[str] = None) -> dict:
    """와이어 봉투 딕셔너리를 생성합니다."""
    message = {"type": event_type, "data": data}
    if request_id is not None:
        message["requestId"] = request_id
    return message


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Envelope(_WireModel):
    """수신 메시지 봉투."""

    type: str = Field(min_length=1)
    data: Any = None
    request_id: Optional[str] = Field(default=None, alias="requestId")


# ============================================================
# Client -> Server payload
# ============================================================

class JoinChannelData(_WireModel):
    channel_key: str = Field(alias="channelKey", min_length=1)


class SignalRequestData(_WireModel):
    """signal 요청. payload는 릴레이에게 불투명(opaque)합니다."""

    target: str = Field(min_length=1)
    payload: Any


class VoiceStatusData(_WireModel):
    transmitting: bool


class BroadcastSourceData(_WireModel):
    """broadcast-source 요청. source가 None이면 방송 중지."""

    source: Optional[Dict[str, Any]] = None


class MessageData(_WireModel):
    text: str = Field(min_length=1)


# ============================================================
# 공유 음원 (shared ambient source)
# ============================================================

class SourceDescriptor(_WireModel):
    """채널에 방송되는 공유 음원 설명자.

    Attributes:
        kind: "stream" (외부 스트림) 또는 "noise" (합성 잡음)
        url: 스트림 URL (kind가 "stream"일 때)
        name: 표시 이름
    """

    kind: Literal["stream", "noise"]
    url: Optional[str] = None
    name: str = ""

    @classmethod
    def from_station(cls, station) -> "SourceDescriptor":
        """외부 방송국 디렉터리 검색 결과로부터 stream 설명자를 만듭니다."""
        return cls(kind="stream", url=station.resolved_url, name=station.name)

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


# ============================================================
# 시그널링 payload (태그드 유니온)
# ============================================================

def _unwrap_sdp(value: Any) -> Any:
    # 브라우저 클라이언트는 RTCSessionDescription 객체 전체({type, sdp})를 보내기도 함
    if isinstance(value, dict):
        return value.get("sdp")
    return value


class OfferPayload(_WireModel):
    type: Literal["offer"]
    sdp: str

    @field_validator("sdp", mode="before")
    @classmethod
    def unwrap_sdp(cls, value: Any) -> Any:
        return _unwrap_sdp(value)


class AnswerPayload(_WireModel):
    type: Literal["answer"]
    sdp: str

    @field_validator("sdp", mode="before")
    @classmethod
    def unwrap_sdp(cls, value: Any) -> Any:
        return _unwrap_sdp(value)


class IceCandidateInit(_WireModel):
    """RTCIceCandidateInit 형태 (브라우저 e.candidate.toJSON()과 동일)."""

    candidate: str = ""
    sdp_mid: Optional[str] = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int] = Field(default=None, alias="sdpMLineIndex")


class CandidatePayload(_WireModel):
    type: Literal["candidate"]
    candidate: IceCandidateInit


SignalPayload = Annotated[
    Union[OfferPayload, AnswerPayload, CandidatePayload],
    Field(discriminator="type"),
]

_signal_payload_adapter = TypeAdapter(SignalPayload)


def parse_signal_payload(raw: Any) -> Union[OfferPayload, AnswerPayload, CandidatePayload]:
    """시그널링 payload를 태그에 따라 파싱합니다.

    Raises:
        pydantic.ValidationError: 알 수 없는 태그이거나 필드가 잘못된 경우
    """
    return _signal_payload_adapter.validate_python(raw)


def offer_payload(sdp: str) -> dict:
    return {"type": "offer", "sdp": sdp}


def answer_payload(sdp: str) -> dict:
    return {"type": "answer", "sdp": sdp}


def candidate_payload(candidate: str, sdp_mid: Optional[str], sdp_mline_index: Optional[int]) -> dict:
    return {
        "type": "candidate",
        "candidate": {
            "candidate": candidate,
            "sdpMid": sdp_mid,
            "sdpMLineIndex": sdp_mline_index,
        },
    }
