"""원격 피어 하나에 대한 WebRTC 세션 관리 모듈.

채널의 원격 참가자마다 PeerSession 하나가 생성되어, 릴레이로 전달된
시그널링 payload와 로컬 미디어 변경을 실제 양방향 미디어 경로로 바꿉니다.

주요 기능:
    - 명시적인 상태 머신 (전이 테이블로 합법성 검사)
    - offer/answer 교환 (initiator / responder 양쪽 경로)
    - ICE candidate 버퍼링 (remote description 적용 전 도착한 candidate 보존)
    - 세션 중 재협상 (새 종류의 트랙 추가 시)
    - 오류 격리 (한 세션의 오류는 FAILED 전이로 끝나며 다른 세션에 영향 없음)
    - 협상 타임아웃 (유실된 offer/answer는 제한 시간 후 FAILED)

State Machine:
    NEW ──initiate──▶ HAVE_LOCAL_OFFER ──answer + transport──▶ CONNECTED
    NEW ──offer──▶ HAVE_REMOTE_OFFER ──answer 생성──▶ HAVE_LOCAL_ANSWER ──transport──▶ CONNECTED
    CONNECTED ──initiate / offer──▶ (재협상) ──▶ CONNECTED
    비종료 상태 ──▶ FAILED | CLOSED (종료 상태)

Candidate Buffering:
    candidate는 자신이 속한 offer/answer보다 먼저 도착할 수 있습니다.
    remote description이 아직 없으면 FIFO 버퍼에 쌓아두었다가,
    remote description 적용 직후 도착 순서대로 정확히 한 번 적용합니다.

Examples:
    >>> session = PeerSession("peer-456", media, send_signal)
    >>> await session.initiate()                      # offer 전송
    >>> await session.handle_signal({"type": "answer", "sdp": "..."})
    >>> await session.close()

See Also:
    controller.py: 세션을 생성/폐기하는 채널 세션 컨트롤러
    aiortc Documentation: https://aiortc.readthedocs.io/
"""
import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..signaling.messages import (
    AnswerPayload,
    IceCandidateInit,
    OfferPayload,
    answer_payload,
    candidate_payload,
    offer_payload,
    parse_signal_payload,
)
from .config import ICEServerConfig, connection_config, ice_config
from .media import LocalMedia

logger = logging.getLogger(__name__)


class PeerState(str, Enum):
    NEW = "new"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    HAVE_LOCAL_ANSWER = "have-local-answer"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({PeerState.FAILED, PeerState.CLOSED})
NEGOTIATING_STATES = frozenset({
    PeerState.HAVE_LOCAL_OFFER,
    PeerState.HAVE_REMOTE_OFFER,
    PeerState.HAVE_LOCAL_ANSWER,
})

_TRANSITIONS: Dict[PeerState, Set[PeerState]] = {
    PeerState.NEW: {PeerState.HAVE_LOCAL_OFFER, PeerState.HAVE_REMOTE_OFFER},
    PeerState.HAVE_LOCAL_OFFER: {PeerState.CONNECTED},
    PeerState.HAVE_REMOTE_OFFER: {PeerState.HAVE_LOCAL_ANSWER},
    PeerState.HAVE_LOCAL_ANSWER: {PeerState.CONNECTED},
    # 재협상
    PeerState.CONNECTED: {PeerState.HAVE_LOCAL_OFFER, PeerState.HAVE_REMOTE_OFFER},
    PeerState.FAILED: set(),
    PeerState.CLOSED: set(),
}


def can_transition(current: PeerState, new: PeerState) -> bool:
    """상태 전이가 합법인지 확인합니다. 비종료 상태는 언제든 종료 상태로 갈 수 있습니다."""
    if current in TERMINAL_STATES:
        return False
    return new in TERMINAL_STATES or new in _TRANSITIONS[current]


class SessionError(Exception):
    """피어 세션 오류의 기본 클래스."""


class InvalidTransition(SessionError):
    """현재 상태에서 허용되지 않는 전이 또는 메시지."""


class SessionClosed(SessionError):
    """대기 중이던 작업이 재개되었을 때 세션 또는 로컬 캡처가 이미 정리된 경우."""


SendSignal = Callable[[str, dict], Awaitable[None]]
StateCallback = Callable[["PeerSession", PeerState, PeerState], Awaitable[None]]
TrackCallback = Callable[["PeerSession", MediaStreamTrack], Awaitable[None]]


class PeerSession:
    """원격 참가자 한 명과의 WebRTC 세션 (Peer Session Coordinator).

    Attributes:
        remote_id (str): 원격 참가자 ID
        media (LocalMedia): 컨트롤러로부터 빌린 로컬 캡처 핸들 (읽기 전용)
        pc (RTCPeerConnection): 실제 피어 연결
        state (PeerState): 현재 상태
        pending_candidates (List[IceCandidateInit]): 적용 대기 중인 원격 candidate (FIFO)
        remote_tracks (List[MediaStreamTrack]): 수신한 원격 트랙
        local_description (Optional[str]): 마지막으로 적용한 로컬 SDP
        remote_description (Optional[str]): 마지막으로 적용한 원격 SDP

    Concurrency:
        - 한 세션의 시그널링 처리는 asyncio.Lock으로 직렬화됨 (도착 순서 유지)
        - 세션끼리는 서로 독립적으로 진행됨
        - close()는 락을 기다리지 않음 (즉시 취소, drain 없음)
    """

    def __init__(
        self,
        remote_id: str,
        media: LocalMedia,
        send_signal: SendSignal,
        *,
        pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
        on_state_change: Optional[StateCallback] = None,
        on_track: Optional[TrackCallback] = None,
        ice: ICEServerConfig = ice_config,
        negotiation_timeout: Optional[float] = None,
    ):
        self.remote_id = remote_id
        self.media = media
        self._send_signal = send_signal
        self._on_state_change = on_state_change
        self._on_track = on_track

        self.state = PeerState.NEW
        self.pending_candidates: List[IceCandidateInit] = []
        self.remote_tracks: List[MediaStreamTrack] = []
        self.local_description: Optional[str] = None
        self.remote_description: Optional[str] = None

        self._has_remote_description = False
        self._awaiting_answer = False
        self._transport_connected = False
        self._renegotiate_pending = False
        self._pc_closed = False
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._negotiation_timeout = (
            connection_config.NEGOTIATION_TIMEOUT if negotiation_timeout is None else negotiation_timeout
        )
        self._negotiation_timer: Optional[asyncio.Task] = None

        if pc_factory is None:
            self.pc = RTCPeerConnection(configuration=ice.rtc_configuration())
        else:
            self.pc = pc_factory()

        self._attach_local_tracks()
        self._register_handlers()
        logger.info(f"[WebRTC] 피어 {remote_id[:8]} 세션 생성 (로컬 트랙: {list(media.tracks())})")

    @property
    def closed(self) -> bool:
        return self.state in TERMINAL_STATES

    # ------------------------------------------------------------
    # 초기화
    # ------------------------------------------------------------

    def _attach_local_tracks(self) -> None:
        tracks = self.media.tracks()
        for track in tracks.values():
            self.pc.addTrack(track)
        # 수신 전용(캡처 실패)이어도 원격 오디오는 받을 수 있어야 함
        if "audio" not in tracks:
            self.pc.addTransceiver("audio", direction="recvonly")

    def _register_handlers(self) -> None:
        pc = self.pc
        remote = self.remote_id[:8]

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            """전송 계층 연결 상태 변경.

            connected는 협상이 끝난 경우 CONNECTED로 승격하고,
            failed는 FAILED, closed는 CLOSED로 처리합니다.
            disconnected는 일시적일 수 있으므로 로그만 남깁니다.
            """
            state = pc.connectionState
            logger.info(f"[WebRTC] 피어 {remote} 연결 상태: {state}")
            if self.closed:
                return
            if state == "connected":
                self._transport_connected = True
                await self._maybe_connected()
            elif state == "failed":
                self._transport_connected = False
                await self._fail(ConnectionError("transport failed"))
            elif state == "closed":
                await self.close()
            elif state == "disconnected":
                logger.warning(f"[WebRTC] 피어 {remote} 연결 불안정 (disconnected)")

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            """로컬 ICE candidate 생성 시 (트리클을 지원하는 구현에서만 발생)."""
            if candidate is None or self.closed:
                return
            await self._send_signal(self.remote_id, candidate_payload(
                "candidate:" + candidate_to_sdp(candidate),
                candidate.sdpMid,
                candidate.sdpMLineIndex,
            ))

        @pc.on("track")
        async def on_track(track: MediaStreamTrack):
            logger.info(f"[WebRTC] 피어 {remote} {track.kind} 트랙 수신")
            self.remote_tracks.append(track)
            if self._on_track:
                await self._on_track(self, track)

            @track.on("ended")
            async def on_ended():
                logger.info(f"[WebRTC] 피어 {remote} {track.kind} 트랙 종료")

    # ------------------------------------------------------------
    # 공개 API
    # ------------------------------------------------------------

    async def initiate(self) -> None:
        """offer를 생성해 원격 참가자에게 보냅니다.

        새 참가자가 나타났을 때, 또는 이미 연결된 세션에 새 종류의 트랙이
        추가되었을 때(재협상) 호출됩니다. 협상이 진행 중이면 요청을 기억해
        두었다가 CONNECTED에 도달한 뒤 다시 실행합니다.

        Note:
            - offer 생성 전과 각 대기 지점 이후에 로컬 캡처와 세션이 살아
              있는지 확인함 (정리된 세션이 되살아나지 않도록)
            - 오류는 FAILED 전이로 처리되며 호출자에게 전파되지 않음
        """
        async with self._lock:
            try:
                await self._initiate()
            except SessionClosed as e:
                logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} offer 생성 중단: {e}")
            except Exception as e:
                await self._fail(e)

    async def handle_signal(self, raw_payload) -> None:
        """릴레이가 전달한 시그널링 payload 하나를 처리합니다.

        Args:
            raw_payload: {"type": "offer"|"answer"|"candidate", ...} 형태의 payload

        Note:
            - 잘못된 형식이거나 현재 상태에 맞지 않는 메시지는 세션을 FAILED로 전이
            - 예외는 호출자(컨트롤러)에게 전파되지 않음
        """
        async with self._lock:
            try:
                payload = parse_signal_payload(raw_payload)
                self._ensure_open()
                if isinstance(payload, OfferPayload):
                    await self._handle_offer(payload)
                elif isinstance(payload, AnswerPayload):
                    await self._handle_answer(payload)
                else:
                    await self._handle_candidate(payload.candidate)
            except SessionClosed as e:
                logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} 시그널 무시: {e}")
            except Exception as e:
                await self._fail(e)

    async def apply_local_track(self, track: MediaStreamTrack) -> bool:
        """로컬 트랙 변경을 반영합니다.

        같은 종류의 송신 트랜시버가 이미 있으면 재협상 없이 트랙만 교체하고,
        새 종류이면 트랙을 추가합니다.

        Returns:
            bool: 재협상(initiate)이 필요하면 True
        """
        async with self._lock:
            if self.closed:
                return False
            for transceiver in self.pc.getTransceivers():
                if transceiver.kind != track.kind:
                    continue
                transceiver.sender.replaceTrack(track)
                if transceiver.direction in ("sendrecv", "sendonly"):
                    logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} {track.kind} 트랙 교체 (재협상 없음)")
                    return False
                # 수신 전용이던 트랜시버를 송신으로 전환
                transceiver.direction = "sendrecv"
                logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} {track.kind} 송신 시작, 재협상 필요")
                return True

            self.pc.addTrack(track)
            logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} {track.kind} 트랙 추가, 재협상 필요")
            return True

    async def detach_local_kind(self, kind: str) -> None:
        """해당 종류의 송신 트랙을 비웁니다 (재협상 없음)."""
        async with self._lock:
            if self.closed:
                return
            for transceiver in self.pc.getTransceivers():
                if transceiver.kind == kind and transceiver.sender.track is not None:
                    transceiver.sender.replaceTrack(None)
                    logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} {kind} 송신 중지")

    async def close(self) -> None:
        """세션을 즉시 종료합니다 (CLOSED, 버퍼 폐기, 피어 연결 종료).

        원격 참가자 퇴장이나 로컬 채널 퇴장 시 호출됩니다. 여러 번 호출해도 안전합니다.
        """
        if not self.closed:
            self.pending_candidates.clear()
            await self._transition(PeerState.CLOSED)
        await self._close_pc()

    # ------------------------------------------------------------
    # 메시지 처리
    # ------------------------------------------------------------

    async def _initiate(self) -> None:
        self._ensure_open()
        if self.state not in (PeerState.NEW, PeerState.CONNECTED):
            self._renegotiate_pending = True
            logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} 협상 진행 중 ({self.state.value}), 재협상 대기")
            return

        offer = await self.pc.createOffer()
        self._ensure_open()
        await self.pc.setLocalDescription(offer)
        self._ensure_open()

        await self._transition(PeerState.HAVE_LOCAL_OFFER)
        self._awaiting_answer = True
        self.local_description = self.pc.localDescription.sdp

        candidate_count = self.local_description.count("a=candidate:")
        logger.info(f"[WebRTC] 피어 {self.remote_id[:8]}에게 offer 전송 (후보 수: {candidate_count})")
        await self._send_signal(self.remote_id, offer_payload(self.local_description))

    async def _handle_offer(self, payload: OfferPayload) -> None:
        if self.state not in (PeerState.NEW, PeerState.CONNECTED):
            raise InvalidTransition(f"offer received in state {self.state.value}")

        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=payload.sdp, type="offer"))
        self._ensure_open()
        await self._transition(PeerState.HAVE_REMOTE_OFFER)
        self._has_remote_description = True
        self.remote_description = payload.sdp

        await self._flush_candidates()

        answer = await self.pc.createAnswer()
        self._ensure_open()
        await self.pc.setLocalDescription(answer)
        self._ensure_open()

        self.local_description = self.pc.localDescription.sdp
        await self._transition(PeerState.HAVE_LOCAL_ANSWER)
        logger.info(f"[WebRTC] 피어 {self.remote_id[:8]}에게 answer 전송")
        await self._send_signal(self.remote_id, answer_payload(self.local_description))

        await self._maybe_connected()

    async def _handle_answer(self, payload: AnswerPayload) -> None:
        if self.state != PeerState.HAVE_LOCAL_OFFER or not self._awaiting_answer:
            raise InvalidTransition(f"answer received in state {self.state.value}")

        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=payload.sdp, type="answer"))
        self._ensure_open()
        self._awaiting_answer = False
        self._has_remote_description = True
        self.remote_description = payload.sdp
        logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} answer 적용")

        await self._flush_candidates()
        await self._maybe_connected()

    async def _handle_candidate(self, init: IceCandidateInit) -> None:
        if not init.candidate:
            logger.debug(f"[WebRTC] 피어 {self.remote_id[:8]} end-of-candidates")
            return

        if self._has_remote_description:
            await self._apply_candidate(init)
        else:
            self.pending_candidates.append(init)
            logger.debug(
                f"[WebRTC] 피어 {self.remote_id[:8]} candidate 버퍼링 "
                f"(remote description 없음, 대기 {len(self.pending_candidates)}개)"
            )

    async def _flush_candidates(self) -> None:
        pending, self.pending_candidates = self.pending_candidates, []
        if pending:
            logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} 버퍼 candidate {len(pending)}개 적용")
        for init in pending:
            await self._apply_candidate(init)

    async def _apply_candidate(self, init: IceCandidateInit) -> None:
        candidate_str = init.candidate
        if candidate_str.startswith("candidate:"):
            candidate_str = candidate_str[10:]

        ice_candidate = candidate_from_sdp(candidate_str)
        ice_candidate.sdpMid = init.sdp_mid
        ice_candidate.sdpMLineIndex = init.sdp_mline_index

        await self.pc.addIceCandidate(ice_candidate)
        logger.debug(f"[WebRTC] 피어 {self.remote_id[:8]} ICE candidate 추가")

    # ------------------------------------------------------------
    # 상태 전이
    # ------------------------------------------------------------

    async def _maybe_connected(self) -> None:
        """협상이 끝났고 전송 계층이 연결되어 있으면 CONNECTED로 전이합니다."""
        if not self._transport_connected or self.closed:
            return

        negotiated = (
            self.state == PeerState.HAVE_LOCAL_ANSWER
            or (self.state == PeerState.HAVE_LOCAL_OFFER and not self._awaiting_answer)
        )
        if not negotiated:
            return

        await self._transition(PeerState.CONNECTED)

        if self._renegotiate_pending:
            self._renegotiate_pending = False
            task = asyncio.create_task(self.initiate())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _transition(self, new_state: PeerState) -> None:
        old_state = self.state
        if not can_transition(old_state, new_state):
            raise InvalidTransition(f"{old_state.value} -> {new_state.value}")

        self.state = new_state
        logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} 상태: {old_state.value} -> {new_state.value}")

        if new_state in NEGOTIATING_STATES:
            self._start_negotiation_timer()
        else:
            self._stop_negotiation_timer()

        if self._on_state_change:
            try:
                await self._on_state_change(self, old_state, new_state)
            except Exception as e:
                logger.error(f"[WebRTC] 피어 {self.remote_id[:8]} 상태 콜백 오류: {e}", exc_info=True)

    def _start_negotiation_timer(self) -> None:
        # HAVE_REMOTE_OFFER -> HAVE_LOCAL_ANSWER는 같은 협상이므로 타이머 유지
        if self._negotiation_timer is not None and not self._negotiation_timer.done():
            return
        self._negotiation_timer = asyncio.create_task(self._negotiation_watchdog())

    def _stop_negotiation_timer(self) -> None:
        timer = self._negotiation_timer
        self._negotiation_timer = None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    async def _negotiation_watchdog(self) -> None:
        """협상이 제한 시간 안에 CONNECTED에 도달하지 못하면 세션을 실패시킵니다.

        릴레이는 전달 실패를 알려주지 않으므로, 유실된 offer/answer는
        이 타임아웃으로만 드러납니다.
        """
        await asyncio.sleep(self._negotiation_timeout)
        if self.closed:
            return
        logger.warning(
            f"[WebRTC] 피어 {self.remote_id[:8]} 협상 시간 초과 "
            f"({self._negotiation_timeout:.1f}초, 상태: {self.state.value})"
        )
        await self._fail(TimeoutError(f"negotiation timed out in state {self.state.value}"))

    async def _fail(self, error: BaseException) -> None:
        if self.closed:
            logger.debug(f"[WebRTC] 피어 {self.remote_id[:8]} 이미 종료됨, 오류 무시: {error}")
            return

        logger.error(
            f"[WebRTC] 피어 {self.remote_id[:8]} 세션 실패 ({self.state.value}): "
            f"{type(error).__name__}: {error}",
            exc_info=error,
        )
        self.pending_candidates.clear()
        await self._transition(PeerState.FAILED)
        await self._close_pc()

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosed(f"session is {self.state.value}")
        if not self.media.is_live:
            raise SessionClosed("local capture released")

    async def _close_pc(self) -> None:
        self._stop_negotiation_timer()
        for task in list(self._tasks):
            if not task.done() and task is not asyncio.current_task():
                task.cancel()
        if self._pc_closed:
            return
        self._pc_closed = True
        await self.pc.close()
        logger.info(f"[WebRTC] 피어 {self.remote_id[:8]} 연결 종료")
