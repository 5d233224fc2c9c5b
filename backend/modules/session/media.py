"""로컬 미디어 캡처 및 공유 음원 재생 상태 모듈.

컨트롤러만이 로컬 캡처를 소유하고 변경합니다. 피어 세션은 트랙 참조를
빌려 쓰기만 합니다.

Classes:
    LocalMedia: 현재 캡처 핸들 (종류별 트랙, PTT 게이트)
    MediaCapture: aiortc MediaPlayer 기반 캡처 장치 열기
    SourcePlayback: 공유 음원 재생 상태 (설명자 + 볼륨)
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from ..signaling.messages import SourceDescriptor
from .config import CaptureConfig, PlaybackConfig, capture_config, playback_config
from .tracks import GatedAudioTrack

logger = logging.getLogger(__name__)


class CaptureError(Exception):
    """로컬 미디어 장치를 열 수 없을 때 발생합니다."""


class LocalMedia:
    """로컬 캡처 핸들.

    오디오 트랙은 항상 GatedAudioTrack으로 감싸져 PTT 게이트를 가집니다.
    장치가 없는 수신 전용(degraded) 모드에서는 트랙이 하나도 없을 수 있습니다.

    Attributes:
        audio (Optional[GatedAudioTrack]): 송신 오디오 트랙
        video (Optional[MediaStreamTrack]): 송신 비디오 트랙
    """

    def __init__(
        self,
        audio: Optional[GatedAudioTrack] = None,
        video: Optional[MediaStreamTrack] = None,
    ):
        self.audio = audio
        self.video = video
        self._stopped = False

    @classmethod
    def receive_only(cls) -> "LocalMedia":
        """트랙이 없는 수신 전용 캡처 핸들."""
        return cls()

    @property
    def is_live(self) -> bool:
        """stop()이 호출되지 않았으면 True (수신 전용이어도 True)."""
        return not self._stopped

    @property
    def transmitting(self) -> bool:
        return bool(self.audio and self.audio.open)

    @transmitting.setter
    def transmitting(self, value: bool) -> None:
        if self.audio is not None:
            self.audio.open = value

    def tracks(self) -> Dict[str, MediaStreamTrack]:
        """종류별 송신 트랙 ({"audio": ..., "video": ...})."""
        tracks = {}
        if self.audio is not None:
            tracks["audio"] = self.audio
        if self.video is not None:
            tracks["video"] = self.video
        return tracks

    def stop(self) -> None:
        """모든 트랙을 정지해 장치를 해제합니다."""
        if self._stopped:
            return
        self._stopped = True
        for track in self.tracks().values():
            track.stop()


class MediaCapture:
    """aiortc MediaPlayer로 로컬 장치를 여는 캡처 팩토리.

    장치 열기(av.open)는 블로킹 호출이므로 executor에서 실행합니다.
    """

    def __init__(self, config: CaptureConfig = capture_config):
        self.config = config

    async def acquire(self, video: bool = False) -> LocalMedia:
        """오디오(항상)와 비디오(선택) 캡처를 엽니다.

        Args:
            video: 비디오 캡처 여부

        Returns:
            LocalMedia: 게이트가 닫힌 상태의 새 캡처 핸들

        Raises:
            CaptureError: 장치를 열 수 없거나 오디오 트랙이 없는 경우
        """
        loop = asyncio.get_running_loop()
        try:
            audio_player = await loop.run_in_executor(None, self._open_audio)
        except Exception as e:
            raise CaptureError(f"Media device open failed: {e}") from e

        video_player = None
        if video:
            try:
                video_player = await loop.run_in_executor(None, self._open_video)
            except Exception as e:
                _release(audio_player)
                raise CaptureError(f"Camera open failed: {e}") from e

        if audio_player.audio is None:
            _release(audio_player, video_player)
            raise CaptureError(f"No audio track on {self.config.AUDIO_DEVICE}")

        video_track = video_player.video if video_player is not None else None
        if video and video_track is None:
            logger.warning(f"[Capture] 비디오 트랙 없음: {self.config.VIDEO_DEVICE}")

        logger.info(f"[Capture] 캡처 준비 완료: audio=True, video={video_track is not None}")
        return LocalMedia(audio=GatedAudioTrack(audio_player.audio), video=video_track)

    def _open_audio(self) -> MediaPlayer:
        return MediaPlayer(self.config.AUDIO_DEVICE, format=self.config.AUDIO_FORMAT)

    def _open_video(self) -> MediaPlayer:
        return MediaPlayer(
            self.config.VIDEO_DEVICE,
            format=self.config.VIDEO_FORMAT,
            options={"video_size": self.config.VIDEO_SIZE},
        )


def _release(*players: Optional[MediaPlayer]) -> None:
    """열어 둔 MediaPlayer의 트랙을 멈춥니다. 모든 트랙이 멈추면 플레이어가 장치를 닫습니다."""
    for player in players:
        if player is None:
            continue
        for track in (player.audio, player.video):
            if track is not None:
                track.stop()
    logger.info("[Capture] 캡처 실패, 열어 둔 장치 해제")


class SourcePlayback:
    """공유 음원 재생 상태.

    실제 재생(스트림 디코딩, 잡음 합성)은 프레젠테이션 계층이 담당하며,
    이 클래스는 현재 설명자와 볼륨만 유지하고 변경 시 리스너에 알립니다.

    Attributes:
        source (Optional[SourceDescriptor]): 현재 재생 중인 음원 (없으면 None)
        volume (float): 현재 재생 볼륨 (0.0 ~ 1.0)
    """

    def __init__(
        self,
        on_change: Optional[Callable[[Optional[SourceDescriptor], float], None]] = None,
        config: PlaybackConfig = playback_config,
    ):
        self.config = config
        self.source: Optional[SourceDescriptor] = None
        self.volume: float = config.FULL_VOLUME
        self.on_change = on_change

    def play(self, source: Optional[SourceDescriptor]) -> None:
        """재생 음원을 교체합니다. None이면 재생 중지."""
        self.source = source
        logger.info(f"[Playback] 공유 음원: {source.name if source else '없음'}")
        self._notify()

    def duck(self, active: bool) -> None:
        """송신 중인 참가자가 있으면 볼륨을 낮추고, 없으면 복원합니다."""
        volume = self.config.DUCKED_VOLUME if active else self.config.FULL_VOLUME
        if volume == self.volume:
            return
        self.volume = volume
        logger.debug(f"[Playback] 볼륨 {volume}")
        self._notify()

    def _notify(self) -> None:
        if self.on_change:
            self.on_change(self.source, self.volume)
