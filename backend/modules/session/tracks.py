"""송신 오디오 트랙 모듈.

로컬 캡처 오디오를 피어에게 전달하면서 PTT(push-to-talk) 게이트를 적용하는
트랙을 제공합니다.
"""

import logging

from aiortc import MediaStreamTrack
from av import AudioFrame

logger = logging.getLogger(__name__)


def silence_like(frame: AudioFrame) -> AudioFrame:
    """주어진 프레임과 같은 포맷/길이/타임스탬프를 가진 무음 프레임을 만듭니다."""
    silent = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
    for plane in silent.planes:
        plane.update(bytes(plane.buffer_size))
    silent.pts = frame.pts
    silent.sample_rate = frame.sample_rate
    silent.time_base = frame.time_base
    return silent


class GatedAudioTrack(MediaStreamTrack):
    """PTT 게이트가 닫혀 있으면 무음을 내보내는 오디오 트랙.

    트랙 자체는 항상 살아 있으므로 게이트를 열고 닫을 때 재협상이 필요 없습니다.
    원본 트랙의 프레임은 게이트 상태와 관계없이 계속 소비되어 타임스탬프가
    끊기지 않습니다.

    Attributes:
        kind (str): 트랙 종류 ("audio")
        track (MediaStreamTrack): 원본 캡처 오디오 트랙
        open (bool): 게이트 상태 (True면 실제 오디오 송신)

    Examples:
        >>> gated = GatedAudioTrack(player.audio)
        >>> gated.open = True   # 송신 시작
        >>> gated.open = False  # 송신 중지 (무음)
    """
    kind = "audio"

    def __init__(self, track: MediaStreamTrack, open: bool = False):
        super().__init__()
        self.track = track
        self.open = open

    async def recv(self):
        """원본 프레임을 받아 게이트 상태에 따라 그대로 또는 무음으로 반환합니다."""
        frame = await self.track.recv()
        if self.open:
            return frame
        return silence_like(frame)

    def stop(self):
        super().stop()
        self.track.stop()
