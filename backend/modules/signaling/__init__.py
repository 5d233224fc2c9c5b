"""시그널링 모듈.

채널 presence 이벤트 전파와 참가자 간 시그널링 payload 전달을 담당합니다.

Classes:
    SignalingRelay: 연결 ↔ 채널 레지스트리 라우팅 계층
    SourceDescriptor: 공유 음원 설명자
"""

from .relay import SignalingRelay, Connection
from .messages import (
    SourceDescriptor,
    OfferPayload,
    AnswerPayload,
    CandidatePayload,
    IceCandidateInit,
    parse_signal_payload,
    envelope,
)

__all__ = [
    "SignalingRelay",
    "Connection",
    "SourceDescriptor",
    "OfferPayload",
    "AnswerPayload",
    "CandidatePayload",
    "IceCandidateInit",
    "parse_signal_payload",
    "envelope",
]
