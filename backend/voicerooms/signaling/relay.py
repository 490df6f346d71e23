"""시그널링 릴레이 모듈.

양방향 실시간 메시지 채널 위에서 동작하는 얇은 프로토콜 계층입니다.
클라이언트 메시지를 검증한 뒤 프레즌스 레지스트리에 반영하거나,
주소가 지정된 단일 멤버의 연결로만 전달합니다.

전달 규칙:
    - 주소 지정 메시지(offer, answer, ice_candidate)는 target_member_id로 지정된
      멤버의 현재 연결 하나에만 전달. 대상이 연결되어 있지 않으면 조용히 버림
    - 룸 브로드캐스트(member_joined, member_left, member_updated)는 이벤트 시점의
      레지스트리 멤버 목록 기준으로 발신자를 제외한 모든 멤버에게 전달
    - join 응답(room_snapshot)은 입장한 연결에만 전송
    - 트랜스포트 연결 끊김은 leave와 같은 정리 경로로 수렴하며, 두 번 호출돼도
      member_left는 한 번만 브로드캐스트됨

Classes:
    SignalingRelay: 연결 관리 및 메시지 라우팅

See Also:
    presence/registry.py: 주소 해석에 사용하는 레지스트리
    routes/signaling.py: FastAPI WebSocket 엔드포인트
"""
import asyncio
import logging
import uuid
from typing import Dict, Iterable, List, Optional, Protocol

from ..presence.registry import PresenceRegistry, Member
from ..shared.errors import InvalidMessage, RoomFull, VoiceRoomError
from .protocol import (
    ADDRESSED_TYPES,
    AddressedData,
    JoinData,
    LeaveData,
    MessageType,
    UpdateStateData,
    envelope,
    error_message,
    parse_inbound,
)

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """릴레이가 메시지를 보낼 수 있는 트랜스포트 연결 (예: FastAPI WebSocket)."""

    async def send_json(self, data: dict) -> None:
        ...


class SignalingRelay:
    """시그널링 메시지를 레지스트리 또는 주소 지정 대상으로 라우팅하는 클래스.

    레지스트리는 생성자로 주입받으며, 릴레이는 레지스트리 외의 룸 상태를
    보관하지 않습니다. 모든 핸들러는 단일 asyncio 이벤트 루프에서 실행되며
    레지스트리 변경은 await 없이 완료됩니다.

    Attributes:
        registry (PresenceRegistry): 룸/멤버 레지스트리
        connections (Dict[str, Connection]): 연결 ID → 트랜스포트 연결

    Examples:
        >>> relay = SignalingRelay(PresenceRegistry())
        >>> connection_id = await relay.connect(websocket)
        >>> await relay.handle_message(connection_id, {"type": "join", "data": {...}})
        >>> await relay.disconnect(connection_id)
    """

    def __init__(self, registry: PresenceRegistry):
        self.registry = registry

        # connection_id -> transport
        self.connections: Dict[str, Connection] = {}

        self._sweeper_task: Optional[asyncio.Task] = None

    async def connect(self, transport: Connection) -> str:
        """새 트랜스포트 연결을 등록하고 연결 ID를 전송합니다."""
        connection_id = uuid.uuid4().hex
        self.connections[connection_id] = transport
        logger.info(f"[Relay] 연결 {connection_id[:8]} 등록 (총 {len(self.connections)}개)")
        await self._send(connection_id, envelope(MessageType.CONNECTED, {"connection_id": connection_id}))
        return connection_id

    async def disconnect(self, connection_id: str) -> Optional[Member]:
        """트랜스포트 연결 끊김을 처리합니다.

        연결 ID로 멤버를 찾아 leave를 호출하고 룸에 member_left를 브로드캐스트합니다.
        이미 퇴장 처리된 연결이면 아무 작업도 하지 않습니다.

        Returns:
            Optional[Member]: 이 호출로 제거된 멤버
        """
        self.connections.pop(connection_id, None)

        member = self.registry.resolve_by_connection(connection_id)
        if member is None:
            logger.debug(f"[Relay] 연결 {connection_id[:8]} 정리 (룸 없음)")
            return None

        room_id = self.registry.get_member_room(member.id)
        removed = self.registry.leave(room_id, member.id) if room_id else None
        if removed is None:
            return None

        logger.info(f"[Relay] 연결 끊김으로 멤버 '{removed.display_name}' ({removed.id}) 룸 '{room_id}' 퇴장")
        await self.broadcast_to_room(
            room_id,
            envelope(MessageType.MEMBER_LEFT, {"member_id": removed.id}),
            exclude=[removed.id],
        )
        return removed

    async def handle_message(self, connection_id: str, message: dict) -> None:
        """수신 메시지 하나를 끝까지 처리합니다.

        형식 오류는 발신 연결에만 error 메시지로 보고하고 레지스트리는 변경하지 않습니다.
        """
        try:
            message_type, data = parse_inbound(message)

            if message_type == MessageType.JOIN:
                await self._handle_join(connection_id, data)
            elif message_type == MessageType.LEAVE:
                await self._handle_leave(connection_id, data)
            elif message_type == MessageType.UPDATE_STATE:
                await self._handle_update_state(connection_id, data)
            elif message_type in ADDRESSED_TYPES:
                await self._handle_addressed(connection_id, message_type, data)
            elif message_type == MessageType.GET_ROOMS:
                await self._send(
                    connection_id,
                    envelope(MessageType.ROOMS_LIST, {"rooms": self.registry.get_room_list()}),
                )
        except VoiceRoomError as e:
            logger.warning(f"[Relay] 연결 {connection_id[:8]} 요청 거부: {e.code} {e.message}")
            await self._send(connection_id, error_message(e.message, e.code))

    async def _handle_join(self, connection_id: str, data: JoinData) -> None:
        """룸 입장 처리."""
        try:
            result = self.registry.join(
                data.room_id,
                data.display_name,
                connection_id,
                member_id=data.member_id,
                reconnect_token=data.reconnect_token,
            )
        except RoomFull as e:
            await self._send(connection_id, error_message(e.message, e.code))
            return

        # 이 join으로 퇴장 처리된 멤버를 해당 룸에 알림
        for room_id, member_id in result.departures:
            await self.broadcast_to_room(
                room_id,
                envelope(MessageType.MEMBER_LEFT, {"member_id": member_id}),
                exclude=[member_id, result.member.id],
            )

        # 입장한 연결에만 현재 룸 스냅샷 전송 (재연결 토큰 포함)
        await self._send(
            connection_id,
            envelope(MessageType.ROOM_SNAPSHOT, {
                "room": result.room.to_dict(),
                "member": result.member.to_dict(),
                "reconnect_token": self.registry.issue_reconnect_token(result.member.id),
            }),
        )

        notice_type = MessageType.MEMBER_UPDATED if result.rejoined else MessageType.MEMBER_JOINED
        await self.broadcast_to_room(
            data.room_id,
            envelope(notice_type, {"member": result.member.to_dict()}),
            exclude=[result.member.id],
        )

    async def _handle_leave(self, connection_id: str, data: LeaveData) -> None:
        """룸 퇴장 처리."""
        sender = self.registry.resolve_by_connection(connection_id)
        if sender is None:
            logger.debug(f"[Relay] 연결 {connection_id[:8]} leave 무시 (룸 없음)")
            return
        if sender.id != data.member_id:
            raise InvalidMessage("Cannot leave on behalf of another member")

        removed = self.registry.leave(data.room_id, data.member_id)
        if removed is None:
            return

        await self.broadcast_to_room(
            data.room_id,
            envelope(MessageType.MEMBER_LEFT, {"member_id": removed.id}),
            exclude=[removed.id],
        )

    async def _handle_update_state(self, connection_id: str, data: UpdateStateData) -> None:
        """멤버 상태 갱신 처리."""
        sender = self._require_member(connection_id)
        fields = data.fields.model_dump(exclude_none=True)
        updated = self.registry.update_member(data.room_id, sender.id, fields)
        if updated is None:
            return

        await self.broadcast_to_room(
            data.room_id,
            envelope(MessageType.MEMBER_UPDATED, {"member": updated.to_dict()}),
            exclude=[updated.id],
        )

    async def _handle_addressed(self, connection_id: str, message_type: str, data: AddressedData) -> None:
        """offer / answer / ice_candidate를 대상 멤버의 현재 연결로만 전달합니다."""
        sender = self._require_member(connection_id)
        sender_room = self.registry.get_member_room(sender.id)

        target = self.registry.resolve_by_id(data.target_member_id)
        if (
            target is None
            or not target.connected
            or data.room_id != sender_room
            or self.registry.get_member_room(target.id) != sender_room
        ):
            # 대상이 없으면 조용히 버림 (큐잉/재시도 없음)
            logger.debug(
                f"[Relay] {message_type} 버림: {sender.id[:8]} -> {data.target_member_id[:8]} (대상 없음)"
            )
            return

        logger.info(f"[Relay] {message_type} 전달: {sender.id[:8]} -> {target.id[:8]}")
        await self._send(
            target.connection_id,
            envelope(ADDRESSED_TYPES[message_type], {
                "from_member_id": sender.id,
                "payload": data.payload,
            }),
        )

    def _require_member(self, connection_id: str) -> Member:
        sender = self.registry.resolve_by_connection(connection_id)
        if sender is None:
            raise InvalidMessage("Not in a room")
        return sender

    async def _send(self, connection_id: str, message: dict) -> bool:
        transport = self.connections.get(connection_id)
        if transport is None:
            return False
        try:
            await transport.send_json(message)
            return True
        except Exception as e:
            logger.error(f"[Relay] 연결 {connection_id[:8]} 전송 실패: {e}")
            return False

    async def broadcast_to_room(self, room_id: str, message: dict, exclude: Iterable[str] = ()) -> int:
        """룸의 현재 멤버에게 메시지를 브로드캐스트합니다.

        전송에 실패한 연결은 브로드캐스트가 끝난 뒤 연결 끊김으로 정리합니다.

        Args:
            room_id: 대상 룸 ID (비활성 룸이면 아무 작업도 하지 않음)
            message: 전송할 메시지
            exclude: 제외할 멤버 ID 목록

        Returns:
            int: 전송에 성공한 연결 수
        """
        room = self.registry.get_room(room_id)
        if room is None:
            return 0

        excluded = set(exclude)
        delivered = 0
        failed: List[str] = []

        # 전송 중 멤버 목록이 바뀔 수 있으므로 복사본 사용
        for member in list(room.members):
            if member.id in excluded or not member.connected:
                continue
            if await self._send(member.connection_id, message):
                delivered += 1
            else:
                failed.append(member.connection_id)

        for connection_id in failed:
            await self.disconnect(connection_id)

        return delivered

    async def run_sweeper(self, interval: float, max_idle: float) -> None:
        """빈 룸 스윕을 주기적으로 실행합니다.

        각 스윕은 동기적으로 실행되므로 메시지 핸들러 도중에 끼어들지 않습니다.
        """
        logger.info(f"[Relay] 빈 룸 스윕 시작 (주기 {interval}s, 보관 {max_idle}s)")
        try:
            while True:
                await asyncio.sleep(interval)
                removed = self.registry.sweep_stale_rooms(max_idle)
                if removed:
                    logger.info(f"[Relay] 빈 룸 {len(removed)}개 정리")
        except asyncio.CancelledError:
            logger.info("[Relay] 빈 룸 스윕 중지")
            raise

    def start_sweeper(self, interval: float, max_idle: float) -> asyncio.Task:
        if self._sweeper_task is None or self._sweeper_task.done():
            self._sweeper_task = asyncio.create_task(self.run_sweeper(interval, max_idle))
        return self._sweeper_task

    async def shutdown(self) -> None:
        """스윕 태스크를 중지하고 연결 목록을 비웁니다."""
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
            self._sweeper_task = None
        self.connections.clear()
