"""시그널링 릴레이 모듈.

ChannelRegistry 위에서 동작하는 메시지 라우팅 계층입니다. 참가자마다 하나의
장기 연결을 유지하며, presence 이벤트를 채널 멤버에게 전파하고 두 참가자
사이의 시그널링 payload를 ID 기준으로 전달합니다.

릴레이는 미디어를 다루지 않으며 payload를 검사하지도 않습니다.
WebSocket 같은 실제 전송 계층은 routes/signaling.py가 담당하고, 이 모듈은
send_json()을 가진 어떤 연결 객체와도 동작합니다.

처리하는 메시지 타입:
    - join-channel: 채널 입장 (이전 채널이 있으면 먼저 퇴장 처리)
    - leave-channel: 현재 채널 퇴장
    - scan-channels: 활성 채널 목록 (요청/응답)
    - signal: 대상 참가자에게 payload 그대로 전달
    - voice-status: 송신(PTT) 상태를 같은 채널의 다른 멤버에게 전파
    - broadcast-source: 공유 음원 설명자를 다른 멤버에게 전파
    - message: 채팅 메시지 (id/timestamp는 릴레이가 생성)

Ordering:
    - 한 연결의 메시지는 도착 순서대로 끝까지 처리됨 (호출 측 수신 루프가 보장)
    - 서로 다른 연결의 핸들러는 await 지점에서 교차 실행될 수 있음
"""

import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol

from pydantic import ValidationError

from ..channel import ChannelRegistry
from .messages import (
    BROADCAST_SOURCE,
    CHANNEL_UPDATE,
    CHAT_MESSAGE,
    CONNECTED,
    ERROR,
    JOIN_CHANNEL,
    JOINED,
    LEAVE_CHANNEL,
    MESSAGE,
    PARTICIPANT_JOINED,
    PARTICIPANT_LEFT,
    SCAN_CHANNELS,
    SCAN_RESULTS,
    SIGNAL,
    SOURCE_UPDATE,
    VOICE_STATUS,
    BroadcastSourceData,
    Envelope,
    JoinChannelData,
    MessageData,
    SignalRequestData,
    VoiceStatusData,
    envelope,
)

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """릴레이가 사용하는 연결 인터페이스 (FastAPI WebSocket 호환)."""

    async def send_json(self, data: Any) -> None: ...


class SignalingRelay:
    """참가자 연결과 채널 레지스트리를 연결하는 라우팅 계층.

    Attributes:
        registry (ChannelRegistry): 채널 멤버십의 유일한 소유자
        connections (Dict[str, Connection]): 참가자 ID → 연결 객체

    Examples:
        >>> relay = SignalingRelay(ChannelRegistry())
        >>> participant = await relay.connect(websocket)
        >>> await relay.handle(participant, {"type": "join-channel", "data": {"channelKey": "101.5"}})
        >>> await relay.disconnect(participant)
    """

    def __init__(self, registry: ChannelRegistry, clock: Callable[[], float] = time.time):
        self.registry = registry
        self.connections: Dict[str, Connection] = {}
        self._clock = clock

        self._handlers: Dict[str, Callable[[str, Envelope], Awaitable[None]]] = {
            JOIN_CHANNEL: self._handle_join_channel,
            LEAVE_CHANNEL: self._handle_leave_channel,
            SCAN_CHANNELS: self._handle_scan_channels,
            SIGNAL: self._handle_signal,
            VOICE_STATUS: self._handle_voice_status,
            BROADCAST_SOURCE: self._handle_broadcast_source,
            MESSAGE: self._handle_message,
        }

    # ------------------------------------------------------------
    # 연결 수명주기
    # ------------------------------------------------------------

    async def connect(self, connection: Connection) -> str:
        """새 연결을 등록하고 참가자 ID를 발급합니다.

        발급된 ID는 connected 이벤트로 클라이언트에 전달됩니다.

        Returns:
            str: 연결 수명 동안 유일한 참가자 ID
        """
        participant = str(uuid.uuid4())
        self.connections[participant] = connection
        logger.info(f"참가자 {participant[:8]} 연결됨 (총 {len(self.connections)}개 연결)")
        await self._send(participant, envelope(CONNECTED, {"participant": participant}))
        return participant

    async def disconnect(self, participant: str) -> None:
        """전송 계층 연결 종료를 처리합니다.

        leave-channel과 동일한 효과를 가지며, 이후 연결 정보를 제거합니다.
        이미 제거된 참가자에 대해 호출해도 안전합니다.
        """
        removed = self.connections.pop(participant, None)
        await self._leave(participant)
        if removed is not None:
            logger.info(f"참가자 {participant[:8]} 연결 끊김 (남은 연결 {len(self.connections)}개)")

    async def close_all(self) -> None:
        """모든 연결을 닫습니다 (서버 종료 시)."""
        participants = list(self.connections.keys())
        for participant in participants:
            connection = self.connections.pop(participant, None)
            close = getattr(connection, "close", None)
            if close is None:
                continue
            try:
                await close(code=1001)
            except Exception as e:
                logger.warning(f"참가자 {participant[:8]} 연결 종료 중 오류: {e}")
        logger.info(f"릴레이 연결 {len(participants)}개 정리 완료")

    # ------------------------------------------------------------
    # 메시지 처리
    # ------------------------------------------------------------

    async def handle(self, participant: str, message: Any) -> None:
        """참가자로부터 받은 메시지 하나를 처리합니다.

        형식이 잘못된 메시지는 error 이벤트로 보낸 참가자에게만 알리고
        무시합니다. 다른 참가자에게는 영향을 주지 않습니다.
        """
        try:
            env = Envelope.model_validate(message)
        except ValidationError as e:
            logger.warning(f"참가자 {participant[:8]}의 잘못된 메시지: {e.error_count()}개 오류")
            await self._send_error(participant, "Malformed message")
            return

        handler = self._handlers.get(env.type)
        if handler is None:
            logger.warning(f"알 수 없는 메시지 타입: {env.type}")
            await self._send_error(participant, f"Unknown message type: {env.type}")
            return

        try:
            await handler(participant, env)
        except ValidationError as e:
            logger.warning(f"참가자 {participant[:8]}의 '{env.type}' payload 검증 실패: {e.error_count()}개 오류")
            await self._send_error(participant, f"Invalid payload for {env.type}")

    async def _handle_join_channel(self, participant: str, env: Envelope) -> None:
        data = env.data
        if isinstance(data, str):
            data = {"channelKey": data}
        join = JoinChannelData.model_validate(data if data is not None else {})

        # 이전 채널 멤버에게 퇴장을 먼저 알림
        if self.registry.channel_of(participant) is not None:
            await self._leave(participant)

        channel_key, member_count = self.registry.join(participant, join.channel_key)

        await self._send(participant, envelope(JOINED, {
            "channelKey": channel_key,
            "memberCount": member_count,
        }))
        await self._broadcast(
            channel_key,
            envelope(PARTICIPANT_JOINED, {"participant": participant}),
            exclude={participant},
        )
        await self._broadcast(
            channel_key,
            envelope(CHANNEL_UPDATE, {"memberCount": self.registry.member_count(channel_key)}),
        )
        logger.info(f"참가자 {participant[:8]}가 채널 '{channel_key}'에 입장함")

    async def _handle_leave_channel(self, participant: str, env: Envelope) -> None:
        channel_key = await self._leave(participant)
        if channel_key is not None:
            logger.info(f"참가자 {participant[:8]}가 채널 '{channel_key}'에서 퇴장함")

    async def _handle_scan_channels(self, participant: str, env: Envelope) -> None:
        channels = [summary.to_wire() for summary in self.registry.list_active()]
        await self._send(
            participant,
            envelope(SCAN_RESULTS, {"channels": channels}, request_id=env.request_id),
        )

    async def _handle_signal(self, participant: str, env: Envelope) -> None:
        request = SignalRequestData.model_validate(env.data)

        if request.target not in self.connections:
            logger.debug(f"signal 대상 {request.target[:8]} 없음, 메시지 폐기 (보낸 참가자 {participant[:8]})")
            return

        # payload는 검사하지 않고 그대로 전달
        await self._send(request.target, envelope(SIGNAL, {
            "sender": participant,
            "payload": request.payload,
        }))

    async def _handle_voice_status(self, participant: str, env: Envelope) -> None:
        status = VoiceStatusData.model_validate(env.data)
        channel_key = self.registry.channel_of(participant)
        if channel_key is None:
            return

        self.registry.touch(channel_key)
        await self._broadcast(
            channel_key,
            envelope(VOICE_STATUS, {"participant": participant, "transmitting": status.transmitting}),
            exclude={participant},
        )

    async def _handle_broadcast_source(self, participant: str, env: Envelope) -> None:
        request = BroadcastSourceData.model_validate(env.data if env.data is not None else {})
        channel_key = self.registry.channel_of(participant)
        if channel_key is None:
            return

        logger.info(
            f"채널 '{channel_key}' 공유 음원 변경 (참가자 {participant[:8]}): "
            f"{request.source.get('name') if request.source else '중지'}"
        )
        await self._broadcast(
            channel_key,
            envelope(SOURCE_UPDATE, {"participant": participant, "source": request.source}),
            exclude={participant},
        )

    async def _handle_message(self, participant: str, env: Envelope) -> None:
        message = MessageData.model_validate(env.data)
        channel_key = self.registry.channel_of(participant)
        if channel_key is None:
            return

        self.registry.touch(channel_key)
        await self._broadcast(channel_key, envelope(CHAT_MESSAGE, {
            "id": uuid.uuid4().hex,
            "sender": participant,
            "text": message.text,
            "timestamp": int(self._clock() * 1000),
        }))

    # ------------------------------------------------------------
    # 내부 헬퍼
    # ------------------------------------------------------------

    async def _leave(self, participant: str) -> Optional[str]:
        """레지스트리에서 퇴장시키고 남은 멤버에게 알립니다."""
        channel_key = self.registry.leave(participant)
        if channel_key is None:
            return None

        await self._broadcast(
            channel_key,
            envelope(PARTICIPANT_LEFT, {"participant": participant}),
        )
        remaining = self.registry.member_count(channel_key)
        if remaining > 0:
            await self._broadcast(channel_key, envelope(CHANNEL_UPDATE, {"memberCount": remaining}))
        return channel_key

    async def _broadcast(self, channel_key: str, message: dict, exclude: Iterable[str] = ()) -> None:
        """채널의 모든 멤버에게 메시지를 전송합니다.

        전송에 실패한 멤버는 연결이 끊긴 것으로 보고 정리합니다.
        """
        excluded = set(exclude)
        disconnected = []

        for member in self.registry.members_of(channel_key):
            if member in excluded:
                continue
            if not await self._send(member, message):
                disconnected.append(member)

        # 연결 끊긴 참가자 정리
        for member in disconnected:
            await self.disconnect(member)

    async def _send(self, participant: str, message: dict) -> bool:
        connection = self.connections.get(participant)
        if connection is None:
            return False
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.error(f"참가자 {participant[:8]}에게 '{message.get('type')}' 전송 중 오류: {e}")
            return False

    async def _send_error(self, participant: str, text: str) -> None:
        await self._send(participant, envelope(ERROR, {"message": text}))
