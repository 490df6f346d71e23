"""FastAPI Voice Room Signaling Server.

이 모듈은 소규모 룸 기반 P2P 음성 채팅을 위한 시그널링 서버를 제공합니다.
FastAPI와 WebSocket으로 룸 프레즌스를 관리하고 WebRTC 협상 메시지를
멤버 간에 중계합니다. 오디오는 서버를 거치지 않습니다.

주요 기능:
    - 룸 입장/퇴장 및 정원 관리 (기본 4명)
    - offer/answer/ICE candidate 주소 지정 전달
    - 실시간 멤버 입/퇴장/상태 변경 브로드캐스트
    - 빈 룸 보관(재연결 유예) 및 주기적 정리
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - Mesh 패턴: 멤버끼리 직접 연결, 서버는 시그널링만 담당
    - PresenceRegistry: 룸 및 멤버 상태 (lifespan에서 생성, app.state에 보관)
    - SignalingRelay: 메시지 검증 및 라우팅
    - WebSocket: 실시간 시그널링 메시지 전송
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# 환경변수 로드 (config/.env)
load_dotenv(Path(__file__).parent / "config" / ".env")

from routes import health_router, rooms_router, signaling_router  # noqa: E402
from voicerooms.presence import PresenceRegistry, room_settings  # noqa: E402
from voicerooms.signaling import SignalingRelay  # noqa: E402


# 로그 설정
LOG_DIR = os.getenv("LOG_DIR", "logs")
os.makedirs(LOG_DIR, exist_ok=True)
log_filename = os.path.join(LOG_DIR, f"server_{datetime.now().strftime('%Y%m%d')}.log")

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
ENV = os.getenv("ENV", "development")

# 로그 보관 기간 (일)
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))


def cleanup_old_logs(log_dir: str = LOG_DIR, retention_days: int = LOG_RETENTION_DAYS) -> int:
    """보관 기간이 지난 server_YYYYMMDD.log 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    log_path = Path(log_dir)
    if not log_path.exists():
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in log_path.glob("server_*.log"):
        try:
            file_date = datetime.strptime(log_file.stem.replace("server_", ""), "%Y%m%d")
            if file_date < cutoff_date:
                log_file.unlink()
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

    시작 시 레지스트리와 릴레이를 생성해 app.state에 보관하고 빈 룸 스윕을
    시작합니다. 종료 시 스윕을 멈추고 레지스트리를 비웁니다.

    Args:
        app (FastAPI): FastAPI 애플리케이션 인스턴스

    Yields:
        None: 앱이 실행되는 동안 제어를 반환
    """
    logger.info("보이스 룸 시그널링 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    registry = PresenceRegistry(capacity=room_settings.ROOM_CAPACITY)
    relay = SignalingRelay(registry)
    app.state.registry = registry
    app.state.relay = relay

    relay.start_sweeper(
        interval=room_settings.SWEEP_INTERVAL_SECONDS,
        max_idle=room_settings.EMPTY_ROOM_RETENTION_SECONDS,
    )
    logger.info(f"레지스트리 초기화 완료 (정원 {room_settings.ROOM_CAPACITY}명)")

    yield

    logger.info("서버 종료 중...")
    await relay.shutdown()
    registry.clear()
    app.state.relay = None
    logger.info("레지스트리 정리 완료")


app = FastAPI(title="Voice Room Signaling Server", lifespan=lifespan)

# CORS - 개발 환경에서는 모든 로컬 네트워크 허용
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=os.getenv(
        "CORS_ORIGIN_REGEX",
        r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}|172\.\d{1,3}\.\d{1,3}\.\d{1,3}):\d+$",
    ),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(rooms_router)
app.include_router(signaling_router)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트.

    Returns:
        dict: {"status": "ok", "service": "Voice Room Signaling Server"}
    """
    return {"status": "ok", "service": "Voice Room Signaling Server"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")), log_level="info")
