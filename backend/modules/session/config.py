"""세션(클라이언트) 모듈 설정.

STUN/TURN 서버, 릴레이 재연결, 로컬 캡처 장치, 공유 음원 볼륨 등
환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer
# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정."""

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:global.stun.twilio.com:3478",
    )

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def as_dicts(self) -> List[dict]:
        """브라우저 RTCPeerConnection에 그대로 넘길 수 있는 iceServers 목록."""
        servers = []
        if self.STUN_SERVER_URL:
            servers.append({"urls": self.STUN_SERVER_URL})
        for stun_url in self.DEFAULT_STUN_SERVERS:
            servers.append({"urls": stun_url})
        if self.has_turn_server:
            servers.append({
                "urls": self.TURN_SERVER_URL,
                "username": self.TURN_USERNAME,
                "credential": self.TURN_CREDENTIAL,
            })
        return servers

    def ice_servers(self) -> List[RTCIceServer]:
        """aiortc RTCIceServer 목록."""
        return [
            RTCIceServer(
                urls=[server["urls"]],
                username=server.get("username"),
                credential=server.get("credential"),
            )
            for server in self.as_dicts()
        ]

    def rtc_configuration(self) -> RTCConfiguration:
        """aiortc RTCPeerConnection 설정."""
        return RTCConfiguration(iceServers=self.ice_servers())


# ============================================================
# 릴레이 연결 설정
# ============================================================

@dataclass(frozen=True)
class ConnectionConfig:
    """릴레이(WebSocket) 연결 관련 설정."""

    # 재연결 최대 시도 횟수
    RECONNECT_MAX_ATTEMPTS: int = int(os.getenv("RECONNECT_MAX_ATTEMPTS", "5"))

    # 재연결 초기 대기 (초), 시도마다 2배
    RECONNECT_BASE_DELAY: float = float(os.getenv("RECONNECT_BASE_DELAY", "0.5"))

    # 재연결 최대 대기 (초)
    RECONNECT_MAX_DELAY: float = float(os.getenv("RECONNECT_MAX_DELAY", "10.0"))

    # 요청/응답 타임아웃 (초)
    REQUEST_TIMEOUT: float = 5.0

    # WebSocket ping 간격 (초)
    PING_INTERVAL: float = 20.0

    # offer/answer 협상 제한 시간 (초). 넘기면 세션 FAILED
    NEGOTIATION_TIMEOUT: float = float(os.getenv("NEGOTIATION_TIMEOUT", "15.0"))


# ============================================================
# 로컬 캡처 장치
# ============================================================

@dataclass(frozen=True)
class CaptureConfig:
    """MediaPlayer로 여는 로컬 캡처 장치 설정.

    예: Linux PulseAudio + V4L2 → AUDIO_FORMAT=pulse, VIDEO_DEVICE=/dev/video0, VIDEO_FORMAT=v4l2
        macOS → AUDIO_DEVICE=":0", AUDIO_FORMAT=avfoundation
    """

    AUDIO_DEVICE: str = os.getenv("CAPTURE_AUDIO_DEVICE", "default")
    AUDIO_FORMAT: str = os.getenv("CAPTURE_AUDIO_FORMAT", "pulse")
    VIDEO_DEVICE: str = os.getenv("CAPTURE_VIDEO_DEVICE", "/dev/video0")
    VIDEO_FORMAT: str = os.getenv("CAPTURE_VIDEO_FORMAT", "v4l2")
    VIDEO_SIZE: str = os.getenv("CAPTURE_VIDEO_SIZE", "640x480")


# ============================================================
# 공유 음원 재생
# ============================================================

@dataclass(frozen=True)
class PlaybackConfig:
    """공유 음원 볼륨 (ducking)."""

    FULL_VOLUME: float = 1.0

    # 누군가 송신(PTT) 중일 때의 볼륨
    DUCKED_VOLUME: float = float(os.getenv("DUCKED_VOLUME", "0.2"))


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
connection_config = ConnectionConfig()
capture_config = CaptureConfig()
playback_config = PlaybackConfig()


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[Session Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[Session Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
if ice_config.STUN_SERVER_URL:
    logger.info(f"[Session Config] STUN URL: {ice_config.STUN_SERVER_URL}")
else:
    logger.info("[Session Config] STUN URL: 기본 공개 STUN 사용")
logger.info(f"[Session Config] 재연결: 최대 {connection_config.RECONNECT_MAX_ATTEMPTS}회, "
            f"초기 대기 {connection_config.RECONNECT_BASE_DELAY}s")
logger.info(f"[Session Config] 협상 제한 시간: {connection_config.NEGOTIATION_TIMEOUT}s")
