"""프레즌스 모듈.

룸/멤버 레지스트리와 관련 설정을 제공합니다.

Classes:
    PresenceRegistry: 룸 및 멤버 관리
    Member: 멤버 데이터 클래스
    Room: 룸 데이터 클래스
    JoinResult: 입장 결과

Config:
    room_settings: 룸 관리 설정
"""

from .registry import PresenceRegistry, Member, Room, JoinResult, MUTABLE_MEMBER_FIELDS
from .config import RoomSettings, room_settings, get_room_settings

__all__ = [
    # Classes
    "PresenceRegistry",
    "Member",
    "Room",
    "JoinResult",
    "MUTABLE_MEMBER_FIELDS",
    # Config
    "RoomSettings",
    "room_settings",
    "get_room_settings",
]
