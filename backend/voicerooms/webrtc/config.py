"""WebRTC 모듈 설정.

TURN/STUN 서버, 마이크 캡처, 시그널링 클라이언트 관련 상수와 환경변수 기반 설정.
"""

import os
import sys
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import List, Optional

# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv
from aiortc import RTCConfiguration, RTCIceServer

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _default_capture_format() -> str:
    if sys.platform == "darwin":
        return "avfoundation"
    if sys.platform.startswith("win"):
        return "dshow"
    return "pulse"


def _default_capture_device() -> str:
    if sys.platform == "darwin":
        return "none:default"
    if sys.platform.startswith("win"):
        return "audio=default"
    return "default"


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
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    )

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])


# ============================================================
# 마이크 캡처 / 오디오 미터 설정
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """로컬 오디오 캡처 관련 설정."""

    # ffmpeg 입력 포맷 (pulse, alsa, avfoundation, dshow)
    CAPTURE_FORMAT: str = os.getenv("CAPTURE_FORMAT", _default_capture_format())

    # 기본 입력 장치
    CAPTURE_DEVICE: str = os.getenv("CAPTURE_DEVICE", _default_capture_device())

    # 오디오 샘플레이트 (Hz)
    AUDIO_SAMPLE_RATE: int = 48000

    # 채널 수 (모노)
    AUDIO_CHANNELS: int = 1

    # 오디오 레벨 폴링 주기 (초)
    METER_INTERVAL: float = 0.1

    # 이 레벨(0..100) 이상이면 발화 중으로 판단
    SPEAKING_THRESHOLD: int = int(os.getenv("SPEAKING_THRESHOLD", "20"))

    # 레벨 계산 하한 (dBFS). 이 값 이하는 0으로 표시
    METER_FLOOR_DB: float = -60.0


# ============================================================
# 시그널링 클라이언트 설정
# ============================================================

@dataclass(frozen=True)
class ClientConfig:
    """시그널링 클라이언트 연결 설정."""

    # 시그널링 서버 WebSocket URL
    SERVER_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:8000/ws")

    # 접근 토큰 (서버의 ACCESS_PASSWORD)
    ACCESS_TOKEN: Optional[str] = os.getenv("ACCESS_PASSWORD") or None

    # 재연결 유예 시간 (초) - 서버의 빈 룸 보관 시간과 같아야 함
    RECONNECT_GRACE_PERIOD: float = float(os.getenv("RECONNECT_GRACE_PERIOD", "120"))

    # 재연결 백오프 (초)
    RECONNECT_INITIAL_DELAY: float = 0.5
    RECONNECT_MAX_DELAY: float = 10.0

    # 룸 스냅샷 대기 시간 (초)
    JOIN_TIMEOUT: float = 10.0

    # 자동 ICE 재시작 횟수
    MAX_ICE_RESTARTS: int = 1


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
media_config = MediaConfig()
client_config = ClientConfig()


def build_rtc_configuration(config: ICEServerConfig = ice_config) -> RTCConfiguration:
    """ICE 서버 설정으로 RTCConfiguration을 생성합니다."""
    ice_servers: List[RTCIceServer] = []

    # STUN 서버 추가 (커스텀 설정)
    if config.STUN_SERVER_URL:
        ice_servers.append(RTCIceServer(urls=[config.STUN_SERVER_URL]))

    # 공개 STUN 서버 (백업용)
    for stun_url in config.DEFAULT_STUN_SERVERS:
        ice_servers.append(RTCIceServer(urls=[stun_url]))

    # TURN 서버 추가 (설정된 경우만)
    if config.has_turn_server:
        ice_servers.append(RTCIceServer(
            urls=[config.TURN_SERVER_URL],
            username=config.TURN_USERNAME,
            credential=config.TURN_CREDENTIAL
        ))
    else:
        logger.debug("[WebRTC] TURN 서버 설정 없음 - STUN만 사용")

    return RTCConfiguration(iceServers=ice_servers)


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[WebRTC Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
if ice_config.STUN_SERVER_URL:
    logger.info(f"[WebRTC Config] STUN URL: {ice_config.STUN_SERVER_URL}")
else:
    logger.info(f"[WebRTC Config] STUN URL: 기본 Google STUN 사용")
logger.info(f"[WebRTC Config] 캡처 포맷: {media_config.CAPTURE_FORMAT}, 장치: {media_config.CAPTURE_DEVICE}")
logger.info(f"[WebRTC Config] 시그널링 서버: {client_config.SERVER_URL}")
