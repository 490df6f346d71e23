"""룸 프레즌스 레지스트리 모듈.

이 모듈은 보이스 룸의 권위 있는(authoritative) 인메모리 상태를 관리합니다.
어떤 룸에 누가 있는지, 각 멤버의 현재 트랜스포트 연결 ID가 무엇인지를
추적하며, 시그널링 릴레이가 주소 지정 전달 대상을 찾을 때 사용됩니다.

주요 기능:
    - 룸 생성 (첫 참조 시 자동 생성)
    - 멤버 입장/퇴장 및 재연결 시 멤버 레코드 재사용
    - 멤버 상태(mute, speaking) 병합 갱신
    - 연결 ID / 멤버 ID 기반 조회
    - 빈 룸 지연 삭제 (스윕)

Architecture:
    - rooms: Dict[str, Room] - 룸 ID → 룸 (멤버는 입장 순서 유지)
    - member_rooms: Dict[str, str] - 멤버 ID → 룸 ID (빠른 조회용)
    - connections: Dict[str, str] - 연결 ID → 멤버 ID (연결된 멤버에 한한 일대일 매핑)

Thread Safety:
    - 모든 변경 메서드는 await 없이 동기적으로 완료되므로 asyncio 단일 스레드
      이벤트 루프 안에서 원자적으로 보임
    - 외부 락이 없으므로 멀티 스레드/멀티 인스턴스 환경에서는 사용할 수 없음

Examples:
    기본 사용법:
        >>> registry = PresenceRegistry(capacity=4)
        >>> result = registry.join("r1", "Alice", "conn-1")
        >>> [m.display_name for m in result.room.members]
        ['Alice']
        >>> registry.resolve_by_connection("conn-1").display_name
        'Alice'

See Also:
    signaling/relay.py: 레지스트리를 사용하는 시그널링 릴레이
"""
import hmac
import time
import uuid
import hashlib
import secrets
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from ..shared.errors import InvalidMessage, RoomFull

logger = logging.getLogger(__name__)

# 클라이언트가 갱신할 수 있는 멤버 필드
MUTABLE_MEMBER_FIELDS = ("muted", "speaking")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Member:
    """룸에 참가한 멤버를 나타내는 데이터 클래스.

    `id`는 같은 룸 안에서 재연결 사이에 유지되고,
    `connection_id`는 트랜스포트가 재연결될 때마다 바뀝니다.

    Attributes:
        id (str): 멤버의 고유 식별자
        display_name (str): 사용자가 설정한 표시 이름
        connection_id (str): 현재 트랜스포트 연결 ID
        connected (bool): 연결 여부
        muted (bool): 음소거 여부
        speaking (bool): 발화 중 여부
        joined_at (datetime): 입장 시각 (UTC)
    """
    id: str
    display_name: str
    connection_id: str
    connected: bool = True
    muted: bool = False
    speaking: bool = False
    joined_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        """클라이언트에 전송할 형태로 변환합니다 (연결 ID는 노출하지 않음)."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "connected": self.connected,
            "muted": self.muted,
            "speaking": self.speaking,
            "joined_at": self.joined_at.isoformat(),
        }


@dataclass
class Room:
    """보이스 룸 데이터 클래스.

    Attributes:
        id (str): 호출자가 지정한 짧은 룸 토큰
        display_name (str): 룸 표시 이름
        capacity (int): 최대 멤버 수
        members (List[Member]): 입장 순서대로 정렬된 멤버 목록
        created_at (datetime): 생성 시각 (UTC)
        active (bool): 멤버가 한 명 이상 있으면 True. False인 룸은 릴레이 대상이 아님
        empty_since (Optional[float]): 마지막 멤버가 나간 시각 (레지스트리 clock 기준)
    """
    id: str
    display_name: str
    capacity: int
    members: List[Member] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    active: bool = True
    empty_since: Optional[float] = None

    @property
    def is_full(self) -> bool:
        return len(self.members) >= self.capacity

    def find_member(self, member_id: str) -> Optional[Member]:
        for member in self.members:
            if member.id == member_id:
                return member
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "members": [m.to_dict() for m in self.members],
            "capacity": self.capacity,
            "created_at": self.created_at.isoformat(),
            "active": self.active,
        }


@dataclass
class JoinResult:
    """join() 결과.

    Attributes:
        room (Room): 입장한 룸
        member (Member): 입장(또는 재사용)된 멤버
        rejoined (bool): 기존 멤버 레코드를 재사용했으면 True
        departures (List[Tuple[str, str]]): 이 join으로 퇴장 처리된 (룸 ID, 멤버 ID).
            호출자는 각 룸에 member_left를 브로드캐스트해야 함
    """
    room: Room
    member: Member
    rejoined: bool = False
    departures: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def previous_room_id(self) -> Optional[str]:
        for room_id, member_id in self.departures:
            if member_id == self.member.id:
                return room_id
        return None


class PresenceRegistry:
    """룸과 멤버를 관리하는 핵심 클래스.

    서비스 시작 시 한 번 생성되어 릴레이에 주입됩니다. 모든 상태는
    프로세스 로컬이며, 하나의 논리적 이벤트에 대한 변경은 중간 상태를
    노출하지 않고 한 번에 완료됩니다.

    Invariants:
        - 모든 룸에서 len(members) <= capacity
        - 멤버 ID는 동시에 최대 하나의 룸에만 존재
        - room.members와 member_rooms 인덱스는 항상 같은 멤버 집합을 가짐
        - connections는 연결된 멤버에 한해 연결 ID ↔ 멤버 ID 일대일 매핑

    Args:
        capacity (int): 룸 정원
        clock (Callable[[], float]): 빈 룸 경과 시간 계산용 단조 시계
        secret (Optional[bytes]): 재연결 토큰 서명 키. 없으면 무작위로 생성
    """

    def __init__(
        self,
        capacity: int = 4,
        clock: Callable[[], float] = time.monotonic,
        secret: Optional[bytes] = None,
    ):
        self.capacity = capacity
        self._clock = clock
        # 재연결 토큰 서명 키 (프로세스 수명 동안 유지)
        self._secret = secret or secrets.token_bytes(32)

        # room_id -> Room
        self.rooms: Dict[str, Room] = {}

        # member_id -> room_id (for quick lookup)
        self.member_rooms: Dict[str, str] = {}

        # connection_id -> member_id
        self.connections: Dict[str, str] = {}

    def _get_or_create_room(self, room_id: str) -> Room:
        room = self.rooms.get(room_id)
        if room is None:
            room = Room(id=room_id, display_name=f"Room {room_id}", capacity=self.capacity)
            self.rooms[room_id] = room
            logger.info(f"[Presence] 룸 '{room_id}' 생성")
        return room

    def issue_reconnect_token(self, member_id: str) -> str:
        """멤버 ID에 묶인 재연결 토큰을 발급합니다.

        토큰은 입장한 연결에만 스냅샷으로 전달되며, 같은 멤버 ID로 다시
        입장하려면 반드시 함께 제시해야 합니다. 서버 비밀 키로 서명하므로
        멤버가 퇴장한 뒤에도 별도 저장 없이 검증할 수 있습니다.
        """
        return hmac.new(self._secret, member_id.encode(), hashlib.sha256).hexdigest()

    def verify_reconnect_token(self, member_id: str, token: Optional[str]) -> bool:
        if not token:
            return False
        return hmac.compare_digest(self.issue_reconnect_token(member_id), token)

    def join(
        self,
        room_id: str,
        display_name: str,
        connection_id: str,
        member_id: Optional[str] = None,
        reconnect_token: Optional[str] = None,
    ) -> JoinResult:
        """연결을 룸에 입장시킵니다.

        룸이 없으면 생성합니다. `member_id`가 이미 이 룸의 멤버이면(재연결)
        레코드를 복제하지 않고 연결 ID만 갱신합니다. 이 연결이 다른 멤버로
        입장해 있거나 `member_id`가 다른 룸에 있으면 먼저 그 멤버를 퇴장시키고
        `departures`에 기록합니다.

        Args:
            room_id (str): 입장할 룸 ID
            display_name (str): 표시 이름
            connection_id (str): 현재 트랜스포트 연결 ID
            member_id (Optional[str]): 재연결 시 이전 멤버 ID
            reconnect_token (Optional[str]): `member_id`에 대해 발급된 재연결 토큰

        Returns:
            JoinResult: 룸, 멤버, 재사용 여부, 퇴장 처리된 (룸 ID, 멤버 ID) 목록

        Raises:
            InvalidMessage: `member_id`에 맞는 재연결 토큰이 없음. 상태는 변경되지 않음
            RoomFull: 룸이 정원에 도달함. 이 경우 어떤 상태도 변경되지 않음
        """
        if member_id and not self.verify_reconnect_token(member_id, reconnect_token):
            logger.warning(
                f"[Presence] 연결 {connection_id[:8]} 재연결 토큰 불일치 (member={member_id[:8]})"
            )
            raise InvalidMessage("Invalid reconnect token for member")

        room = self.rooms.get(room_id)
        current_member_id = self.connections.get(connection_id)

        # 같은 연결이 이미 이 룸의 같은 멤버인 경우 (중복 join)
        if current_member_id and room is not None and member_id in (None, current_member_id):
            existing = room.find_member(current_member_id)
            if existing is not None:
                return JoinResult(room=room, member=existing, rejoined=True)

        # 재연결: 같은 룸에 이미 있는 멤버 레코드 재사용 (정원 검사 불필요)
        existing = room.find_member(member_id) if member_id and room is not None else None
        if existing is not None:
            departures = self._depart(current_member_id, keep=existing.id)
            self._rebind_connection(existing, connection_id)
            if display_name:
                existing.display_name = display_name
            logger.info(
                f"[Presence] 멤버 '{existing.display_name}' ({existing.id}) 룸 '{room_id}' 재연결"
            )
            return JoinResult(room=room, member=existing, rejoined=True, departures=departures)

        if room is not None and room.is_full:
            logger.warning(f"[Presence] 룸 '{room_id}' 정원 초과 ({room.capacity}명), 입장 거부")
            raise RoomFull(room_id, room.capacity)

        # 정원 검사 통과 후에만 이전 룸에서 퇴장 처리
        new_member_id = member_id or current_member_id or uuid.uuid4().hex
        departures = self._depart(current_member_id)
        departures += self._depart(member_id)

        room = self._get_or_create_room(room_id)
        member = Member(
            id=new_member_id,
            display_name=display_name,
            connection_id=connection_id,
        )
        room.members.append(member)
        room.active = True
        room.empty_since = None
        self.member_rooms[member.id] = room_id
        self.connections[connection_id] = member.id

        logger.info(
            f"[Presence] 멤버 '{display_name}' ({member.id}) 룸 '{room_id}' 입장. "
            f"현재 {len(room.members)}/{room.capacity}명"
        )
        return JoinResult(room=room, member=member, departures=departures)

    def _depart(self, member_id: Optional[str], keep: Optional[str] = None) -> List[Tuple[str, str]]:
        if not member_id or member_id == keep or member_id not in self.member_rooms:
            return []
        room_id = self.member_rooms[member_id]
        self.leave(room_id, member_id)
        return [(room_id, member_id)]

    def _rebind_connection(self, member: Member, connection_id: str) -> None:
        # 이전 연결은 더 이상 이 멤버로 해석되지 않음
        if self.connections.get(member.connection_id) == member.id:
            del self.connections[member.connection_id]
        self.connections[connection_id] = member.id
        member.connection_id = connection_id
        member.connected = True

    def leave(self, room_id: str, member_id: str) -> Optional[Member]:
        """멤버를 룸에서 제거합니다.

        마지막 멤버가 나가면 룸은 비활성화되어 스윕 대상이 됩니다.
        두 번째 호출은 아무 작업도 하지 않습니다.

        Args:
            room_id (str): 룸 ID
            member_id (str): 퇴장할 멤버 ID

        Returns:
            Optional[Member]: 제거된 멤버. 룸이나 멤버가 없으면 None
        """
        room = self.rooms.get(room_id)
        if room is None:
            return None

        member = room.find_member(member_id)
        if member is None:
            return None

        room.members.remove(member)
        self.member_rooms.pop(member_id, None)
        if self.connections.get(member.connection_id) == member_id:
            del self.connections[member.connection_id]
        member.connected = False

        if not room.members:
            room.active = False
            room.empty_since = self._clock()
            logger.info(f"[Presence] 룸 '{room_id}' 비어 있음 (삭제 대기)")
        else:
            logger.info(
                f"[Presence] 멤버 '{member.display_name}' ({member_id}) 룸 '{room_id}' 퇴장. "
                f"현재 {len(room.members)}명"
            )
        return member

    def update_member(self, room_id: str, member_id: str, fields: dict) -> Optional[Member]:
        """멤버 상태 필드(muted, speaking)를 병합합니다.

        Args:
            room_id (str): 룸 ID
            member_id (str): 멤버 ID
            fields (dict): 갱신할 필드. 허용되지 않은 키는 무시됨

        Returns:
            Optional[Member]: 갱신된 멤버. 알 수 없는 ID면 None
        """
        room = self.rooms.get(room_id)
        member = room.find_member(member_id) if room else None
        if member is None:
            return None

        for key in MUTABLE_MEMBER_FIELDS:
            if key in fields and fields[key] is not None:
                setattr(member, key, bool(fields[key]))

        ignored = set(fields) - set(MUTABLE_MEMBER_FIELDS)
        if ignored:
            logger.debug(f"[Presence] 갱신 불가 필드 무시: {sorted(ignored)}")
        return member

    def resolve_by_connection(self, connection_id: str) -> Optional[Member]:
        """연결 ID로 현재 연결된 멤버를 조회합니다."""
        member_id = self.connections.get(connection_id)
        return self.resolve_by_id(member_id) if member_id else None

    def resolve_by_id(self, member_id: str) -> Optional[Member]:
        """멤버 ID로 멤버를 조회합니다."""
        room_id = self.member_rooms.get(member_id)
        if room_id and room_id in self.rooms:
            return self.rooms[room_id].find_member(member_id)
        return None

    def get_member_room(self, member_id: str) -> Optional[str]:
        return self.member_rooms.get(member_id)

    def get_room(self, room_id: str) -> Optional[Room]:
        """릴레이 대상이 될 수 있는(활성) 룸만 반환합니다."""
        room = self.rooms.get(room_id)
        if room is None or not room.active:
            return None
        return room

    def get_other_members(self, room_id: str, exclude_member_id: str) -> List[Member]:
        """특정 멤버를 제외한 룸의 다른 모든 멤버를 반환합니다."""
        room = self.get_room(room_id)
        if room is None:
            return []
        return [m for m in room.members if m.id != exclude_member_id]

    def sweep_stale_rooms(self, max_idle: float) -> List[str]:
        """비어 있은 지 `max_idle`초가 지난 룸을 삭제합니다.

        외부 스케줄러가 주기적으로 호출하며, join/leave 안에서 호출되지 않습니다.

        Returns:
            List[str]: 삭제된 룸 ID 목록
        """
        now = self._clock()
        stale = [
            room_id for room_id, room in self.rooms.items()
            if not room.members and room.empty_since is not None
            and now - room.empty_since >= max_idle
        ]
        for room_id in stale:
            del self.rooms[room_id]
            logger.info(f"[Presence] 빈 룸 '{room_id}' 삭제 (스윕)")
        return stale

    def get_room_list(self) -> List[dict]:
        """활성 룸 요약 목록을 반환합니다."""
        return [
            {
                "room_id": room.id,
                "member_count": len(room.members),
                "capacity": room.capacity,
                "members": [{"id": m.id, "display_name": m.display_name} for m in room.members],
            }
            for room in self.rooms.values()
            if room.active
        ]

    def get_room_count(self, room_id: str) -> int:
        room = self.rooms.get(room_id)
        return len(room.members) if room else 0

    def stats(self) -> dict:
        return {
            "rooms": sum(1 for r in self.rooms.values() if r.active),
            "empty_rooms": sum(1 for r in self.rooms.values() if not r.active),
            "members": len(self.member_rooms),
        }

    def clear(self) -> None:
        """서비스 종료 시 모든 상태를 비웁니다."""
        self.rooms.clear()
        self.member_rooms.clear()
        self.connections.clear()
