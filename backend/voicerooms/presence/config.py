"""프레즌스 레지스트리 설정.

룸 정원, 빈 룸 보관 시간, 스윕 주기 등 서버 측 룸 관리 설정.
"""

import re
import logging
from functools import lru_cache
from pathlib import Path
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# .env 파일 로드
_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


class RoomSettings(BaseSettings):
    """룸 관리 설정 클래스.

    환경 변수를 Python 객체로 매핑하고 유효성을 검증합니다.
    """

    # 룸 정원
    ROOM_CAPACITY: int = Field(
        default=4,
        ge=1,
        le=16,
        description="룸당 최대 멤버 수"
    )

    # 빈 룸 보관 시간 (트랜스포트 재연결 유예 시간과 동일하게 유지)
    EMPTY_ROOM_RETENTION_SECONDS: float = Field(
        default=120.0,
        ge=0,
        description="멤버가 없는 룸을 삭제하기 전까지 보관하는 시간 (초)"
    )

    SWEEP_INTERVAL_SECONDS: float = Field(
        default=60.0,
        gt=0,
        description="빈 룸 스윕 주기 (초)"
    )

    # 입력 검증
    MAX_DISPLAY_NAME_LENGTH: int = Field(
        default=32,
        ge=1,
        description="표시 이름 최대 길이"
    )

    ROOM_ID_PATTERN: str = Field(
        default=r"^[A-Za-z0-9_-]{1,64}$",
        description="룸 ID 허용 정규식"
    )

    @field_validator('ROOM_ID_PATTERN')
    @classmethod
    def validate_room_id_pattern(cls, v: str) -> str:
        """정규식 컴파일 가능 여부 검증"""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"ROOM_ID_PATTERN이 올바른 정규식이 아닙니다: {e}")
        return v

    class Config:
        """Pydantic 설정"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_room_settings() -> RoomSettings:
    """설정 싱글톤 인스턴스 반환.

    Returns:
        RoomSettings: 설정 객체
    """
    return RoomSettings()


# 전역 settings 객체
room_settings = get_room_settings()

# 로그 출력
logger.info(f"[Presence Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[Presence Config] 룸 정원: {room_settings.ROOM_CAPACITY}")
logger.info(
    f"[Presence Config] 빈 룸 보관: {room_settings.EMPTY_ROOM_RETENTION_SECONDS}s, "
    f"스윕 주기: {room_settings.SWEEP_INTERVAL_SECONDS}s"
)
