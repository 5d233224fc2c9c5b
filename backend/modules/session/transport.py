"""릴레이 클라이언트 전송 계층 (WebSocket).

시그널링 릴레이(/ws)에 대한 장기 연결 하나를 유지합니다.

주요 기능:
    - 연결 직후 connected 이벤트로 발급된 참가자 ID 기록
    - 수신 이벤트를 도착 순서대로 on_event 콜백에 전달
    - requestId 기반 요청/응답 (scan-channels)
    - 연결이 끊기면 지수 백오프로 재연결, 성공 시 on_reset 호출

재연결 후에는 서버 쪽 참가자 ID가 새로 발급되므로 이전 세션을 이어갈 수
없습니다. on_reset 콜백(컨트롤러)이 모든 세션을 버리고 채널에 다시
입장합니다.
"""

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from ..signaling.messages import CONNECTED, envelope
from .config import ConnectionConfig, connection_config

logger = logging.getLogger(__name__)


class RelayUnavailable(Exception):
    """재연결 시도를 모두 소진했거나 연결이 없는 상태에서 요청한 경우."""


EventCallback = Callable[[str, Any], Awaitable[None]]
ResetCallback = Callable[[], Awaitable[None]]


class RelayClient:
    """시그널링 릴레이 WebSocket 클라이언트.

    Attributes:
        url (str): 릴레이 WebSocket URL (예: ws://localhost:8000/ws)
        participant_id (Optional[str]): 현재 연결에서 발급받은 참가자 ID
        on_event (Optional[EventCallback]): (event_type, data) 수신 콜백
        on_reset (Optional[ResetCallback]): 재연결 성공 후 호출되는 콜백

    Examples:
        >>> client = RelayClient("ws://localhost:8000/ws")
        >>> client.on_event = controller.handle_event
        >>> client.on_reset = controller.on_transport_reset
        >>> runner = asyncio.create_task(client.run())
        >>> await client.wait_ready()
        >>> await client.send("join-channel", {"channelKey": "101.5"})
    """

    def __init__(
        self,
        url: str,
        on_event: Optional[EventCallback] = None,
        on_reset: Optional[ResetCallback] = None,
        *,
        config: ConnectionConfig = connection_config,
        connect: Callable[..., Awaitable[Any]] = websockets.connect,
    ):
        self.url = url
        self.on_event = on_event
        self.on_reset = on_reset
        self.config = config
        self.participant_id: Optional[str] = None

        self._connect = connect
        self._ws = None
        self._ready = asyncio.Event()
        self._closing = False
        self._pending: Dict[str, asyncio.Future] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def wait_ready(self) -> None:
        """연결되어 참가자 ID를 받을 때까지 대기합니다."""
        await self._ready.wait()

    async def run(self) -> None:
        """연결을 유지하며 이벤트를 수신합니다. close() 전까지 반환하지 않습니다.

        Raises:
            RelayUnavailable: 재연결 시도를 모두 소진한 경우
        """
        reconnecting = False
        while not self._closing:
            ws = await self._connect_with_backoff()
            self._ws = ws
            self._ready.set()

            if reconnecting and self.on_reset:
                logger.info(f"[Relay] 재연결 완료 (참가자 {self.participant_id[:8]}), 세션 초기화")
                await self.on_reset()

            try:
                await self._receive_loop(ws)
            finally:
                self._ws = None
                self._ready.clear()
                self._fail_pending()

            if self._closing:
                break
            logger.warning("[Relay] 연결 끊김, 재연결 시도")
            reconnecting = True

    async def send(self, event_type: str, data: Any = None) -> bool:
        """이벤트 하나를 전송합니다.

        Returns:
            bool: 전송 성공 여부 (연결이 없거나 끊긴 경우 False)
        """
        ws = self._ws
        if ws is None:
            logger.warning(f"[Relay] 연결 없음, '{event_type}' 전송 생략")
            return False
        try:
            await ws.send(json.dumps(envelope(event_type, data)))
            return True
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"[Relay] '{event_type}' 전송 실패 (연결 종료): {e}")
            return False

    async def request(self, event_type: str, data: Any = None, timeout: Optional[float] = None) -> Any:
        """requestId를 붙여 요청을 보내고 같은 requestId의 응답 data를 반환합니다.

        Raises:
            RelayUnavailable: 연결이 없거나 응답 전에 연결이 끊긴 경우
            asyncio.TimeoutError: 시간 내에 응답이 없는 경우
        """
        ws = self._ws
        if ws is None:
            raise RelayUnavailable("not connected to relay")

        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send(json.dumps(envelope(event_type, data, request_id=request_id)))
            return await asyncio.wait_for(future, timeout or self.config.REQUEST_TIMEOUT)
        finally:
            self._pending.pop(request_id, None)

    async def close(self) -> None:
        """연결을 닫고 run() 루프를 종료시킵니다."""
        self._closing = True
        ws = self._ws
        if ws is not None:
            await ws.close()
        self._fail_pending()
        logger.info("[Relay] 클라이언트 종료")

    # ------------------------------------------------------------
    # 내부
    # ------------------------------------------------------------

    async def _connect_with_backoff(self):
        delay = self.config.RECONNECT_BASE_DELAY
        max_attempts = self.config.RECONNECT_MAX_ATTEMPTS

        for attempt in range(1, max_attempts + 1):
            try:
                ws = await self._connect(self.url, ping_interval=self.config.PING_INTERVAL)
                await self._handshake(ws)
                if attempt > 1:
                    logger.info(f"[Relay] {attempt}번째 시도에서 연결 성공")
                return ws
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                if attempt == max_attempts:
                    logger.error(f"[Relay] {max_attempts}회 연결 실패: {e}")
                    raise RelayUnavailable(f"relay unreachable after {max_attempts} attempts") from e

                logger.warning(f"[Relay] 연결 실패, {delay}초 후 재시도 ({attempt}/{max_attempts}): {e}")
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.config.RECONNECT_MAX_DELAY)

        raise RelayUnavailable("relay unreachable")

    async def _handshake(self, ws) -> None:
        """첫 메시지(connected)에서 참가자 ID를 읽습니다."""
        raw = await asyncio.wait_for(ws.recv(), self.config.REQUEST_TIMEOUT)
        message = json.loads(raw)
        if message.get("type") != CONNECTED:
            await ws.close()
            raise websockets.exceptions.InvalidHandshake(
                f"expected '{CONNECTED}', got '{message.get('type')}'"
            )
        self.participant_id = message["data"]["participant"]
        logger.info(f"[Relay] 연결됨: {self.url} (참가자 {self.participant_id[:8]})")

    async def _receive_loop(self, ws) -> None:
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"[Relay] JSON이 아닌 메시지 무시: {str(raw)[:80]}")
                    continue
                await self._dispatch(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"[Relay] 연결 종료: {e}")

    async def _dispatch(self, message: dict) -> None:
        request_id = message.get("requestId")
        if request_id is not None:
            future = self._pending.pop(request_id, None)
            if future is not None and not future.done():
                future.set_result(message.get("data"))
                return

        if self.on_event is None:
            return
        try:
            await self.on_event(message.get("type"), message.get("data"))
        except Exception as e:
            logger.error(f"[Relay] '{message.get('type')}' 이벤트 처리 중 오류: {e}", exc_info=True)

    def _fail_pending(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(RelayUnavailable("relay connection closed"))
        self._pending.clear()
