"""Cerebro 채널 시그널링 서버 (FastAPI).

이 모듈은 주파수 채널 기반 메시(mesh) 음성/영상 통신을 위한
시그널링 서버를 제공합니다. 미디어는 참가자끼리 직접 주고받으며,
서버는 채널 presence와 시그널링 메시지 전달만 담당합니다.

주요 기능:
    - 채널(주파수) 기반 참가자 관리
    - 참가자 간 offer/answer/candidate 전달 (payload 비검사)
    - 실시간 입/퇴장, 송신(PTT) 상태, 공유 음원, 채팅 전파
    - 활성 채널 스캔
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - Full mesh: 채널의 모든 참가자 쌍이 직접 연결
    - ChannelRegistry: 채널 및 멤버십 상태 (유일한 소유자)
    - SignalingRelay: 연결 ↔ 레지스트리 라우팅
    - WebSocket(/ws): 실시간 시그널링 메시지 전송
"""
import logging
from contextlib import asynccontextmanager
import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from modules import ChannelRegistry, SignalingRelay
from modules.session.config import ice_config
from routes import health_router, signaling_router, init_relay, get_relay
from dotenv import load_dotenv
from pathlib import Path

# config/.env 환경변수 로드
load_dotenv(Path(__file__).parent / "config" / ".env")


# 로그 설정
os.makedirs("logs", exist_ok=True)
log_filename = f"logs/server_{__import__('datetime').datetime.now().strftime('%Y%m%d')}.log"

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일) - 기본 30일
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "30"))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))

# 쉼표로 구분된 허용 origin 목록 (미설정 시 로컬 네트워크만 허용)
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "").split(",") if origin.strip()]


def cleanup_old_logs(log_dir: str = "logs", retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    import glob
    from datetime import datetime, timedelta

    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file)[len("server_"):-len(".log")]
            if datetime.strptime(date_str, "%Y%m%d") < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={LOG_LEVEL}, env={ENV}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    시작 시 채널 레지스트리와 릴레이를 만들어 라우터에 연결하고,
    종료 시 모든 연결을 닫고 레지스트리를 비웁니다.

    Note:
        - 시작: 오래된 로그 정리, 레지스트리/릴레이 생성
        - 종료: 릴레이 연결 종료, 레지스트리 정리
    """
    logger.info("채널 시그널링 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    registry = ChannelRegistry()
    relay = SignalingRelay(registry)
    init_relay(relay)

    yield

    logger.info("서버 종료 중...")
    await relay.close_all()
    registry.clear()
    init_relay(None)
    logger.info("릴레이 정리 완료")


app = FastAPI(title="Cerebro Channel Signaling Server", lifespan=lifespan)

if CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    # 개발 환경에서는 로컬 네트워크 허용
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}|10\.\d{1,3}\.\d{1,3}\.\d{1,3}):\d+$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# 라우터 등록
app.include_router(health_router)
app.include_router(signaling_router)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트 (Health check).

    Returns:
        dict: 서버 상태 정보
            - status (str): 서버 상태
            - service (str): 서비스 이름
    """
    return {"status": "ok", "service": "Cerebro Channel Signaling Server"}


@app.get("/api/channels")
async def get_channels_api():
    """활성 채널 목록을 조회합니다 (scan-channels와 동일한 내용).

    Returns:
        dict: {"channels": [{"channelKey", "memberCount", "lastActivity"}, ...]}
            인원 내림차순, 같은 인원이면 키 오름차순
    """
    relay = get_relay()
    if relay is None:
        return {"channels": []}
    return {"channels": [summary.to_wire() for summary in relay.registry.list_active()]}


@app.get("/api/ice-servers")
async def get_ice_servers():
    """브라우저 클라이언트용 ICE 서버 목록을 제공합니다.

    Returns:
        list: ICE servers 배열 (STUN + 설정된 경우 TURN)

    Environment Variables:
        TURN_SERVER_URL, TURN_USERNAME, TURN_CREDENTIAL, STUN_SERVER_URL

    Examples:
        [
            {"urls": "stun:stun.l.google.com:19302"},
            {"urls": "turn:turn.example.com:3478", "username": "user", "credential": "pass"}
        ]
    """
    if ice_config.has_turn_server:
        logger.info("ICE 서버 제공: STUN + TURN")
    else:
        logger.info("ICE 서버 제공: STUN만 (TURN 미설정)")
    return ice_config.as_dicts()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL.lower())
