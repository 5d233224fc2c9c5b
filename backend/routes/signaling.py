"""채널 시그널링 WebSocket 라우터.

SignalingRelay를 FastAPI WebSocket에 연결하는 어댑터입니다.
연결마다 하나의 순차 수신 루프를 돌며, 메시지 처리 로직은 모두
modules/signaling/relay.py에 있습니다.
"""

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from modules.signaling import SignalingRelay
from modules.signaling.messages import ERROR, envelope

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 릴레이 참조 (app.py lifespan에서 설정됨)
_relay: Optional[SignalingRelay] = None


def init_relay(relay: Optional[SignalingRelay]):
    """릴레이 인스턴스를 설정합니다.

    app.py에서 호출하여 글로벌 릴레이 참조를 설정합니다.
    종료 시 None을 넘겨 해제합니다.
    """
    global _relay
    _relay = relay
    if relay is not None:
        logger.info("시그널링 라우터 릴레이 초기화 완료")


def get_relay() -> Optional[SignalingRelay]:
    return _relay


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """채널 시그널링 WebSocket 엔드포인트.

    연결 직후 connected 이벤트로 참가자 ID를 보내고, 이후 메시지를 도착
    순서대로 하나씩 끝까지 처리합니다. 연결이 끊기면 채널 퇴장과 동일하게
    정리됩니다.

    처리하는 메시지 타입:
        - join-channel, leave-channel, scan-channels
        - signal, voice-status, broadcast-source, message

    Args:
        websocket: FastAPI WebSocket 연결 객체
    """
    relay = _relay
    if relay is None:
        logger.error("릴레이가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    await websocket.accept()
    participant = await relay.connect(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"참가자 {participant[:8]}의 JSON이 아닌 메시지 무시")
                await websocket.send_json(envelope(ERROR, {"message": "Invalid JSON"}))
                continue

            await relay.handle(participant, message)

    except WebSocketDisconnect:
        logger.info(f"참가자 {participant[:8]} WebSocket 종료")
    except Exception as e:
        logger.error(f"참가자 {participant[:8]}의 WebSocket 연결 중 오류: {e}", exc_info=True)
    finally:
        # 엔드포인트가 취소되어도 퇴장 알림은 끝까지 보낸다
        await asyncio.shield(relay.disconnect(participant))
        logger.info(f"참가자 {participant[:8]} 정리 완료")
