"""Backend modules package.

이 패키지는 주파수 채널 기반 메시 음성/영상 통신의 핵심 모듈을 포함합니다.

Modules:
    channel: 채널(주파수) presence 레지스트리
    signaling: 시그널링 릴레이와 와이어 메시지
    session: 클라이언트 측 피어 세션, 채널 세션 컨트롤러, 릴레이 클라이언트
"""

from .channel import ChannelRegistry, ChannelSummary
from .signaling import SignalingRelay, SourceDescriptor

__all__ = [
    # Channel
    "ChannelRegistry",
    "ChannelSummary",
    # Signaling
    "SignalingRelay",
    "SourceDescriptor",
]
