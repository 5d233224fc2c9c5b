"""세션 모듈 (클라이언트 측).

원격 참가자별 WebRTC 세션과 채널 참여 전체를 관리합니다.

Classes:
    PeerSession: 원격 피어 하나와의 세션 상태 머신
    ChannelSessionController: 채널 참여, 로컬 캡처, 세션 생성/폐기
    RelayClient: 시그널링 릴레이 WebSocket 클라이언트
"""

from .peer_session import (
    PeerSession,
    PeerState,
    SessionError,
    InvalidTransition,
    SessionClosed,
)
from .controller import ChannelSessionController, Notice
from .media import CaptureError, LocalMedia, MediaCapture, SourcePlayback
from .transport import RelayClient, RelayUnavailable
from .external import is_direct_dial

__all__ = [
    "PeerSession",
    "PeerState",
    "SessionError",
    "InvalidTransition",
    "SessionClosed",
    "ChannelSessionController",
    "Notice",
    "CaptureError",
    "LocalMedia",
    "MediaCapture",
    "SourcePlayback",
    "RelayClient",
    "RelayUnavailable",
    "is_direct_dial",
]
