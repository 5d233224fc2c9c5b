"""채널 세션 컨트롤러.

한 클라이언트의 채널 참여 전체를 조율합니다. 릴레이 이벤트를 받아 원격
참가자마다 PeerSession을 만들고 없애며, 로컬 캡처(마이크/카메라)의 유일한
소유자로서 PTT, 비디오 토글, 공유 음원, 채팅을 처리합니다.

Flow:
    1. start(): 캡처 장치를 먼저 열고 (실패 시 수신 전용) join-channel 전송
    2. participant-joined: 기존 멤버 쪽에서 세션 생성 후 offer
    3. signal(offer): 새로 들어온 쪽에서 세션 생성 후 answer
    4. participant-left / leave / 재연결: 세션 즉시 정리 (drain 없음)

Concurrency:
    - 세션별 처리는 각각 별도 task로 실행 (한 피어의 협상이 다른 피어를 막지 않음)
    - 같은 발신자의 메시지 순서는 세션 락이 보장
    - 세션이 아직 없을 때 도착한 candidate는 발신자별 FIFO에 보관했다가 세션 생성 시 넘김
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aiortc import MediaStreamTrack
from pydantic import ValidationError

from ..signaling.messages import (
    BROADCAST_SOURCE,
    CHANNEL_UPDATE,
    CHAT_MESSAGE,
    ERROR,
    JOIN_CHANNEL,
    JOINED,
    LEAVE_CHANNEL,
    MESSAGE,
    PARTICIPANT_JOINED,
    PARTICIPANT_LEFT,
    SCAN_CHANNELS,
    SIGNAL,
    SOURCE_UPDATE,
    VOICE_STATUS,
    SourceDescriptor,
)
from .external import CallHandle, TelephonyGateway, is_direct_dial
from .media import CaptureError, LocalMedia, MediaCapture, SourcePlayback
from .peer_session import NEGOTIATING_STATES, PeerSession, PeerState

logger = logging.getLogger(__name__)


# 시스템 알림 문구
SIGNAL_DETECTED = "Signal detected"
SIGNAL_LOST = "Signal lost"
LINK_ESTABLISHED = "Secure link established"
LINK_UNSTABLE = "Link unstable"
CONNECTION_LOST = "Connection lost, re-tuning"


@dataclass
class Notice:
    """채널 범위 시스템 알림."""
    text: str
    level: str = "info"
    channel_key: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class ChannelSessionController:
    """채널 참여와 원격 피어 세션 전체를 관리하는 컨트롤러.

    Attributes:
        transport: send()/request()/participant_id를 제공하는 릴레이 클라이언트
        capture (MediaCapture): 로컬 캡처 팩토리
        playback (SourcePlayback): 공유 음원 재생 상태
        channel_key (Optional[str]): 현재 채널 키
        member_count (int): 릴레이가 알려준 현재 채널 인원
        media (Optional[LocalMedia]): 현재 로컬 캡처 (컨트롤러만 변경)
        degraded (bool): 캡처 실패로 수신 전용인지 여부
        sessions (Dict[str, PeerSession]): 원격 참가자 ID → 세션
        pending_signals (Dict[str, List[dict]]): 세션 생성 전 도착한 candidate (발신자별 FIFO)
        transmitting (Set[str]): 현재 송신(PTT) 중인 원격 참가자
        notices (List[Notice]): 시스템 알림 기록
        messages (List[dict]): 수신한 채팅 메시지
    """

    def __init__(
        self,
        transport,
        capture: MediaCapture,
        *,
        pc_factory: Optional[Callable[[], Any]] = None,
        playback: Optional[SourcePlayback] = None,
        telephony: Optional[TelephonyGateway] = None,
        caller_id: Optional[str] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
        on_message: Optional[Callable[[dict], None]] = None,
        on_remote_track: Optional[Callable[[str, MediaStreamTrack], Awaitable[None]]] = None,
        negotiation_timeout: Optional[float] = None,
    ):
        self.transport = transport
        self.capture = capture
        self.playback = playback or SourcePlayback()
        self.telephony = telephony
        self.caller_id = caller_id

        self.channel_key: Optional[str] = None
        self.member_count = 0
        self.media: Optional[LocalMedia] = None
        self.video_enabled = False
        self.degraded = False
        self.call: Optional[CallHandle] = None

        self.sessions: Dict[str, PeerSession] = {}
        self.pending_signals: Dict[str, List[dict]] = {}
        self.transmitting: Set[str] = set()
        self.remote_media: Dict[str, List[MediaStreamTrack]] = {}
        self.notices: List[Notice] = []
        self.messages: List[dict] = []

        self._pc_factory = pc_factory
        self._on_notice = on_notice
        self._on_message = on_message
        self._on_remote_track = on_remote_track
        self._negotiation_timeout = negotiation_timeout
        self._linked: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

        self._handlers = {
            JOINED: self._on_joined,
            PARTICIPANT_JOINED: self._on_participant_joined,
            PARTICIPANT_LEFT: self._on_participant_left,
            CHANNEL_UPDATE: self._on_channel_update,
            SIGNAL: self._on_signal,
            VOICE_STATUS: self._on_voice_status,
            SOURCE_UPDATE: self._on_source_update,
            CHAT_MESSAGE: self._on_chat_message,
            ERROR: self._on_error,
        }

    # ------------------------------------------------------------
    # 사용자 동작
    # ------------------------------------------------------------

    async def start(self, channel_key: str, video: bool = False) -> None:
        """채널에 입장합니다.

        캡처 장치를 먼저 열고, 준비된 뒤에만 join-channel을 보냅니다.
        캡처에 실패하면 알림을 남기고 수신 전용으로 입장합니다.
        직접 다이얼 키는 릴레이 대신 전화 게이트웨이로 연결합니다.

        Args:
            channel_key: 주파수("101.5"), 전화번호, 또는 자유 텍스트
            video: 비디오 캡처 여부
        """
        if self.channel_key is not None:
            await self.leave()

        if is_direct_dial(channel_key):
            await self._dial(channel_key)
            return

        await self._acquire(video)
        self.channel_key = channel_key
        logger.info(f"채널 '{channel_key}' 입장 요청 (video={self.video_enabled}, 수신 전용={self.degraded})")
        await self.transport.send(JOIN_CHANNEL, {"channelKey": channel_key})

    async def leave(self) -> None:
        """채널에서 나갑니다.

        모든 세션을 즉시 취소하고(drain 없음) 버퍼를 버린 뒤
        leave-channel을 보내고 캡처를 해제합니다.
        """
        if self.call is not None:
            self.call.disconnect()
            self.call = None

        await self._discard_all_sessions()

        if self.channel_key is not None and not is_direct_dial(self.channel_key):
            await self.transport.send(LEAVE_CHANNEL)
            logger.info(f"채널 '{self.channel_key}' 퇴장")

        self.channel_key = None
        self.member_count = 0
        self.transmitting.clear()
        if self.playback.source is not None:
            self.playback.play(None)
        self._update_ducking()

        if self.media is not None:
            self.media.stop()
            self.media = None
        self.video_enabled = False

    async def set_transmitting(self, active: bool) -> None:
        """PTT 상태를 바꿉니다. 오디오 트랙 게이트만 열고 닫으므로 재협상이 없습니다."""
        if self.media is None or self.media.audio is None:
            logger.warning("로컬 오디오 캡처 없음, 송신 불가")
            return

        self.media.transmitting = active
        self._update_ducking()
        await self.transport.send(VOICE_STATUS, {"transmitting": active})

    async def set_video(self, enabled: bool) -> None:
        """비디오를 켜거나 끕니다.

        캡처를 새로 열고 각 세션에 트랙을 교체/추가합니다. 새 종류의 트랙이
        추가된 세션만 재협상(initiate)하며, 빠진 종류는 송신만 비웁니다.
        기존 캡처는 모든 세션이 새 트랙으로 바뀐 뒤 해제됩니다.
        """
        if self.media is None:
            logger.warning("채널에 입장하지 않은 상태, 비디오 변경 무시")
            return

        old_media = self.media
        try:
            new_media = await self.capture.acquire(video=enabled)
        except CaptureError as e:
            self._notice(f"Camera unavailable: {e}", level="error")
            return

        if self.media is not old_media:
            # 캡처를 여는 동안 leave() 또는 다른 전환이 일어남
            new_media.stop()
            logger.info("비디오 전환 중 캡처가 바뀌어 새 캡처 폐기")
            return

        new_media.transmitting = old_media.transmitting
        self.media = new_media
        self.video_enabled = new_media.video is not None
        self.degraded = False

        sessions = list(self.sessions.values())
        for session in sessions:
            session.media = new_media
        await asyncio.gather(*(self._retrack(session, new_media) for session in sessions))

        old_media.stop()
        logger.info(f"비디오 {'켜짐' if self.video_enabled else '꺼짐'} (세션 {len(sessions)}개 갱신)")

    async def set_shared_source(self, source: Optional[SourceDescriptor]) -> None:
        """공유 음원을 바꿉니다. 로컬 재생은 즉시(낙관적) 반영됩니다."""
        self.playback.play(source)
        await self.transport.send(BROADCAST_SOURCE, {"source": source.to_wire() if source else None})

    async def send_message(self, text: str) -> None:
        text = text.strip()
        if not text or self.channel_key is None:
            return
        await self.transport.send(MESSAGE, {"text": text})

    async def scan(self) -> List[dict]:
        """활성 채널 목록을 요청합니다 (인원 내림차순)."""
        data = await self.transport.request(SCAN_CHANNELS)
        return (data or {}).get("channels", [])

    async def on_transport_reset(self) -> None:
        """릴레이 재연결 후 호출됩니다.

        참가자 ID가 바뀌었으므로 모든 세션과 버퍼를 버리고 채널에 새로 입장합니다.
        """
        self._notice(CONNECTION_LOST, level="warning")
        await self._discard_all_sessions()
        self.transmitting.clear()
        self._update_ducking()

        if self.channel_key is None or is_direct_dial(self.channel_key):
            return

        await self.transport.send(JOIN_CHANNEL, {"channelKey": self.channel_key})
        if self.media is not None and self.media.transmitting:
            await self.transport.send(VOICE_STATUS, {"transmitting": True})

    async def drain(self) -> None:
        """진행 중인 세션 task가 모두 끝날 때까지 기다립니다."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------
    # 릴레이 이벤트
    # ------------------------------------------------------------

    async def handle_event(self, event_type: str, data: Any) -> None:
        """릴레이 이벤트 하나를 처리합니다 (RelayClient.on_event)."""
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug(f"처리하지 않는 이벤트: {event_type}")
            return
        await handler(data or {})

    async def _on_joined(self, data: dict) -> None:
        self.channel_key = data.get("channelKey", self.channel_key)
        self.member_count = data.get("memberCount", 0)
        self._notice(f"Tuned to {self.channel_key} ({self.member_count} on channel)")

    async def _on_participant_joined(self, data: dict) -> None:
        remote_id = data["participant"]
        self._notice(SIGNAL_DETECTED)

        if remote_id in self.sessions:
            await self._discard(remote_id)
        session = self._create_session(remote_id)
        self._spawn(session.initiate())

    async def _on_participant_left(self, data: dict) -> None:
        remote_id = data["participant"]
        await self._discard(remote_id)
        self.transmitting.discard(remote_id)
        self._update_ducking()
        self._notice(SIGNAL_LOST)

    async def _on_channel_update(self, data: dict) -> None:
        self.member_count = data.get("memberCount", self.member_count)

    async def _on_signal(self, data: dict) -> None:
        sender = data["sender"]
        payload = data.get("payload")
        kind = payload.get("type") if isinstance(payload, dict) else None

        session = self.sessions.get(sender)
        if session is not None:
            self._spawn(session.handle_signal(payload))
            return

        if kind == "offer":
            session = self._create_session(sender)
            # 먼저 도착한 candidate를 offer보다 앞에 넘김 (세션 락이 순서 보장)
            for buffered in self.pending_signals.pop(sender, []):
                self._spawn(session.handle_signal(buffered))
            self._spawn(session.handle_signal(payload))
        elif kind == "candidate":
            self.pending_signals.setdefault(sender, []).append(payload)
            logger.debug(f"[WebRTC] 피어 {sender[:8]} 세션 없음, candidate 보관 ({len(self.pending_signals[sender])}개)")
        else:
            logger.warning(f"[WebRTC] 피어 {sender[:8]} 세션 없음, '{kind}' 시그널 폐기")

    async def _on_voice_status(self, data: dict) -> None:
        participant = data["participant"]
        if data.get("transmitting"):
            self.transmitting.add(participant)
        else:
            self.transmitting.discard(participant)
        self._update_ducking()

    async def _on_source_update(self, data: dict) -> None:
        raw = data.get("source")
        if raw is None:
            self.playback.play(None)
            return
        try:
            source = SourceDescriptor.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"잘못된 공유 음원 설명자 무시: {e.error_count()}개 오류")
            return
        self.playback.play(source)

    async def _on_chat_message(self, data: dict) -> None:
        self.messages.append(data)
        if self._on_message:
            self._on_message(data)

    async def _on_error(self, data: dict) -> None:
        message = data.get("message", "unknown error")
        logger.warning(f"릴레이 오류: {message}")
        self._notice(f"Relay error: {message}", level="warning")

    # ------------------------------------------------------------
    # 세션 관리
    # ------------------------------------------------------------

    def _create_session(self, remote_id: str) -> PeerSession:
        if self.media is None:
            self.media = LocalMedia.receive_only()
            self.degraded = True

        session = PeerSession(
            remote_id,
            self.media,
            self._send_signal,
            pc_factory=self._pc_factory,
            on_state_change=self._on_session_state,
            on_track=self._on_session_track,
            negotiation_timeout=self._negotiation_timeout,
        )
        self.sessions[remote_id] = session
        return session

    async def _send_signal(self, target: str, payload: dict) -> None:
        await self.transport.send(SIGNAL, {"target": target, "payload": payload})

    async def _on_session_state(self, session: PeerSession, old: PeerState, new: PeerState) -> None:
        remote_id = session.remote_id
        if self.sessions.get(remote_id) is not session:
            return

        if new == PeerState.CONNECTED:
            if remote_id not in self._linked:
                self._linked.add(remote_id)
                self._notice(LINK_ESTABLISHED)
            for track in session.remote_tracks:
                await self._deliver_track(remote_id, track)
        elif new == PeerState.FAILED:
            was_linked = remote_id in self._linked
            self._notice(LINK_UNSTABLE, level="warning")
            await self._discard(remote_id)
            if was_linked and old in NEGOTIATING_STATES:
                self._recover_link(remote_id)

    def _recover_link(self, remote_id: str) -> None:
        """재협상 중 실패한 링크를 새 세션으로 다시 연결합니다.

        양쪽이 동시에 재협상하면(glare) 두 세션 모두 상대 offer를 받아 실패합니다.
        참가자 ID가 작은 쪽만 새 offer를 보내고, 다른 쪽은 그 offer로 새 세션을
        만들어 응답합니다.
        """
        local_id = self.transport.participant_id
        if self.channel_key is None or self.media is None or not local_id or local_id > remote_id:
            logger.info(f"[WebRTC] 피어 {remote_id[:8]} 재연결은 상대 offer 대기")
            return
        logger.info(f"[WebRTC] 피어 {remote_id[:8]} 재협상 실패, 새 세션으로 재연결")
        session = self._create_session(remote_id)
        self._spawn(session.initiate())

    async def _on_session_track(self, session: PeerSession, track: MediaStreamTrack) -> None:
        # 원격 미디어는 CONNECTED 이후에만 표시 계층에 전달
        if session.state == PeerState.CONNECTED and self.sessions.get(session.remote_id) is session:
            await self._deliver_track(session.remote_id, track)

    async def _deliver_track(self, remote_id: str, track: MediaStreamTrack) -> None:
        delivered = self.remote_media.setdefault(remote_id, [])
        if track in delivered:
            return
        delivered.append(track)
        logger.info(f"[WebRTC] 피어 {remote_id[:8]} 원격 {track.kind} 트랙 표시")
        if self._on_remote_track:
            await self._on_remote_track(remote_id, track)

    async def _retrack(self, session: PeerSession, media: LocalMedia) -> None:
        tracks = media.tracks()
        try:
            renegotiate = False
            for track in tracks.values():
                if await session.apply_local_track(track):
                    renegotiate = True
            for kind in ("audio", "video"):
                if kind not in tracks:
                    await session.detach_local_kind(kind)
        except Exception as e:
            logger.error(f"[WebRTC] 피어 {session.remote_id[:8]} 트랙 갱신 실패: {e}", exc_info=True)
            return

        if renegotiate:
            self._spawn(session.initiate())

    async def _discard(self, remote_id: str) -> None:
        session = self.sessions.pop(remote_id, None)
        self.pending_signals.pop(remote_id, None)
        self.remote_media.pop(remote_id, None)
        self._linked.discard(remote_id)
        if session is not None:
            await session.close()

    async def _discard_all_sessions(self) -> None:
        sessions = list(self.sessions.values())
        self.sessions.clear()
        self.pending_signals.clear()
        self.remote_media.clear()
        self._linked.clear()
        for session in sessions:
            await session.close()
        if sessions:
            logger.info(f"[WebRTC] 세션 {len(sessions)}개 정리")

    # ------------------------------------------------------------
    # 기타
    # ------------------------------------------------------------

    async def _acquire(self, video: bool) -> None:
        try:
            self.media = await self.capture.acquire(video=video)
            self.degraded = False
        except CaptureError as e:
            logger.warning(f"캡처 실패, 수신 전용으로 입장: {e}")
            self._notice(f"Capture unavailable, receive-only: {e}", level="error")
            self.media = LocalMedia.receive_only()
            self.degraded = True
        self.video_enabled = self.media.video is not None

    async def _dial(self, destination: str) -> None:
        if self.telephony is None:
            self._notice(f"Cannot dial {destination}: no telephony gateway", level="error")
            return

        self.channel_key = destination
        try:
            call = await self.telephony.dial(destination, self.caller_id)
        except Exception as e:
            logger.error(f"전화 연결 실패 ({destination}): {e}", exc_info=True)
            self._notice(f"Call failed: {e}", level="error")
            self.channel_key = None
            return

        call.on("accept", lambda *args: self._notice(f"Call connected: {destination}"))
        call.on("disconnect", lambda *args: self._notice(f"Call ended: {destination}"))
        call.on("error", lambda *args: self._notice(f"Call error: {destination}", level="error"))
        self.call = call
        logger.info(f"전화 게이트웨이로 다이얼: {destination}")

    def _update_ducking(self) -> None:
        local_active = self.media is not None and self.media.transmitting
        self.playback.duck(bool(self.transmitting) or local_active)

    def _notice(self, text: str, level: str = "info") -> None:
        notice = Notice(text=text, level=level, channel_key=self.channel_key)
        self.notices.append(notice)
        if level == "info":
            logger.info(f"[Notice] {text}")
        else:
            logger.warning(f"[Notice] {text}")
        if self._on_notice:
            self._on_notice(notice)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"세션 task 오류: {error}", exc_info=error)
