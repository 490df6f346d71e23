"""세션 코디네이터 모듈.

시그널링 클라이언트가 전달하는 프레즌스 이벤트를 오케스트레이터 호출로 연결합니다.

협상 정책:
    - 새로 입장한 멤버가 기존 멤버 모두에게 offer를 보냄
    - 기존 멤버는 member_joined를 받으면 링크만 만들고 offer를 기다림
    - 모르는 멤버의 offer는 링크를 즉석에서 만들고 answer
    - member_left 시 링크와 버퍼된 candidate를 정리
    - member_updated는 로컬 멤버 뷰만 갱신 (링크는 건드리지 않음)

Examples:
    >>> client = SignalingClient("ws://localhost:8000/ws")
    >>> await client.start()
    >>> coordinator = SessionCoordinator(client, PeerConnectionOrchestrator())
    >>> snapshot = await coordinator.join("r1", "Alice")
    >>> await coordinator.toggle_mute()
    >>> await coordinator.leave()
    >>> coordinator.close()
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from ..signaling.protocol import MessageType
from ..shared.errors import (
    InvalidMessage,
    NegotiationFailure,
    RoomFull,
    UnknownPeer,
    VoiceRoomError,
)
from ..webrtc.capture import CaptureConstraints
from ..webrtc.config import client_config, media_config
from ..webrtc.events import (
    LevelSample,
    LocalCandidate,
    OrchestratorEvent,
    PeerDisconnected,
    RestartOffer,
)
from ..webrtc.orchestrator import PeerConnectionOrchestrator
from .client import SignalingClient

logger = logging.getLogger(__name__)


class SessionCoordinator:
    """프레즌스 이벤트와 WebRTC 링크를 묶는 클래스.

    Attributes:
        client (SignalingClient): 시그널링 클라이언트
        orchestrator (PeerConnectionOrchestrator): 링크 관리자
        room_id (Optional[str]): 현재 룸 ID
        member_id (Optional[str]): 로컬 멤버 ID
        joined_at (Optional[str]): 서버가 기록한 로컬 멤버 레코드의 입장 시각
        reconnect_token (Optional[str]): 같은 멤버 ID로 재입장할 때 제시하는 토큰
        members (Dict[str, dict]): 다른 멤버들의 로컬 뷰 (member_id → 멤버 딕셔너리)
        speaking (bool): 마지막으로 게시한 발화 상태
    """

    def __init__(
        self,
        client: SignalingClient,
        orchestrator: PeerConnectionOrchestrator,
        speaking_threshold: int = media_config.SPEAKING_THRESHOLD,
        join_timeout: float = client_config.JOIN_TIMEOUT,
    ):
        self.client = client
        self.orchestrator = orchestrator
        self.speaking_threshold = speaking_threshold
        self.join_timeout = join_timeout

        self.room_id: Optional[str] = None
        self.member_id: Optional[str] = None
        self.display_name: Optional[str] = None
        self.members: Dict[str, dict] = {}
        self.joined_at: Optional[str] = None
        self.reconnect_token: Optional[str] = None
        self.speaking = False

        self._join_future: Optional[asyncio.Future] = None
        self._pending_room_id: Optional[str] = None
        self._listeners: List[Tuple[object, str, Callable]] = []
        self._subscribe()

    # ------------------------------------------------------------------
    # 구독 관리
    # ------------------------------------------------------------------

    def _on(self, emitter, event: str, handler: Callable) -> None:
        emitter.on(event, handler)
        self._listeners.append((emitter, event, handler))

    def _subscribe(self) -> None:
        self._on(self.client, MessageType.ROOM_SNAPSHOT, self._on_room_snapshot)
        self._on(self.client, MessageType.ERROR, self._on_error)
        self._on(self.client, MessageType.MEMBER_JOINED, self._on_member_joined)
        self._on(self.client, MessageType.MEMBER_LEFT, self._on_member_left)
        self._on(self.client, MessageType.MEMBER_UPDATED, self._on_member_updated)
        self._on(self.client, MessageType.OFFER_RECEIVED, self._on_offer_received)
        self._on(self.client, MessageType.ANSWER_RECEIVED, self._on_answer_received)
        self._on(self.client, MessageType.ICE_CANDIDATE_RECEIVED, self._on_candidate_received)
        self._on(self.client, "reconnected", self._on_reconnected)

        self._on(self.orchestrator, OrchestratorEvent.LOCAL_CANDIDATE, self._on_local_candidate)
        self._on(self.orchestrator, OrchestratorEvent.RESTART_OFFER, self._on_restart_offer)
        self._on(self.orchestrator, OrchestratorEvent.PEER_DISCONNECTED, self._on_peer_disconnected)
        self._on(self.orchestrator, OrchestratorEvent.LEVEL, self._on_level)

    def close(self) -> None:
        """등록한 모든 이벤트 리스너를 해제합니다."""
        for emitter, event, handler in self._listeners:
            emitter.remove_listener(event, handler)
        self._listeners.clear()
        if self._join_future is not None and not self._join_future.done():
            self._join_future.cancel()
        logger.info("[Session] 코디네이터 리스너 해제")

    # ------------------------------------------------------------------
    # 로컬 동작
    # ------------------------------------------------------------------

    async def join(
        self,
        room_id: str,
        display_name: str,
        constraints: Optional[CaptureConstraints] = None,
    ) -> dict:
        """룸에 입장하고 기존 멤버 모두와 협상을 시작합니다.

        마이크를 먼저 열고, 룸 스냅샷을 받은 뒤 기존 멤버마다 링크를 만들어
        offer를 보냅니다.

        Returns:
            dict: 룸 스냅샷 (room, member)

        Raises:
            PermissionDenied: 마이크 접근 거부
            RoomFull: 룸 정원 초과
            InvalidMessage: 서버가 요청을 거부함
        """
        await self.orchestrator.initialize_capture(constraints)

        snapshot = await self._request_join(room_id, display_name, self.member_id)
        self.display_name = display_name

        others = [m for m in snapshot["room"]["members"] if m["id"] != self.member_id]
        if others:
            await asyncio.gather(*(self._initiate(m["id"]) for m in others))

        self.orchestrator.start_metering()
        logger.info(f"[Session] 룸 '{room_id}' 입장 완료 (기존 멤버 {len(others)}명에게 offer)")
        return snapshot

    async def _request_join(self, room_id: str, display_name: str, member_id: Optional[str]) -> dict:
        loop = asyncio.get_running_loop()
        self._join_future = loop.create_future()
        self._pending_room_id = room_id
        data = {"room_id": room_id, "display_name": display_name}
        if member_id and self.reconnect_token:
            data["member_id"] = member_id
            data["reconnect_token"] = self.reconnect_token

        if not await self.client.send(MessageType.JOIN, data):
            self._join_future = None
            raise ConnectionError("Signaling connection is not available")

        try:
            return await asyncio.wait_for(self._join_future, self.join_timeout)
        finally:
            self._join_future = None

    async def _initiate(self, remote_member_id: str) -> None:
        try:
            self.orchestrator.create_link(remote_member_id)
            offer = await self.orchestrator.make_offer(remote_member_id)
            await self._send_addressed(MessageType.OFFER, remote_member_id, offer)
        except VoiceRoomError as e:
            logger.error(f"[Session] 피어 {remote_member_id[:8]} offer 실패: {e}")

    async def leave(self) -> None:
        """룸에서 퇴장하고 모든 링크와 마이크를 해제합니다."""
        if self.room_id and self.member_id:
            await self.client.send(MessageType.LEAVE, {"room_id": self.room_id, "member_id": self.member_id})
        await self.orchestrator.close_all()
        logger.info(f"[Session] 룸 '{self.room_id}' 퇴장")
        self.room_id = None
        self.members.clear()
        self.speaking = False

    async def toggle_mute(self) -> bool:
        """음소거를 토글하고 룸에 상태를 게시합니다.

        Returns:
            bool: 변경 후 음소거 여부
        """
        muted = not self.orchestrator.voice_state.muted
        self.orchestrator.set_muted(muted)
        fields = {"muted": muted}
        if muted and self.speaking:
            self.speaking = False
            fields["speaking"] = False
        await self._publish_state(fields)
        return muted

    def set_volume(self, volume: int) -> int:
        return self.orchestrator.set_volume(volume)

    async def switch_input_device(self, device_id: str) -> None:
        await self.orchestrator.switch_input_device(device_id)

    def get_connection_states(self) -> Dict[str, str]:
        return self.orchestrator.get_connection_states()

    async def _publish_state(self, fields: dict) -> None:
        if self.room_id is None:
            return
        await self.client.send(MessageType.UPDATE_STATE, {"room_id": self.room_id, "fields": fields})

    async def _send_addressed(self, message_type: str, target_member_id: str, payload: dict) -> None:
        await self.client.send(message_type, {
            "room_id": self.room_id,
            "target_member_id": target_member_id,
            "payload": payload,
        })

    # ------------------------------------------------------------------
    # 서버 이벤트 핸들러
    # ------------------------------------------------------------------

    def _on_room_snapshot(self, data: dict) -> None:
        room = data["room"]
        member = data["member"]
        self.room_id = room["id"]
        self.member_id = member["id"]
        self.joined_at = member.get("joined_at")
        self.reconnect_token = data.get("reconnect_token", self.reconnect_token)
        self.orchestrator.local_member_id = member["id"]
        self.members = {m["id"]: m for m in room["members"] if m["id"] != member["id"]}

        if self._join_future is not None and not self._join_future.done():
            self._join_future.set_result(data)

    def _on_error(self, data: dict) -> None:
        code = data.get("code")
        message = data.get("message", "")
        logger.warning(f"[Session] 서버 오류: {code} {message}")

        if self._join_future is None or self._join_future.done():
            return
        if code == RoomFull.code:
            error = RoomFull(self._pending_room_id or "", data.get("capacity", 0))
            error.message = message
            self._join_future.set_exception(error)
        else:
            self._join_future.set_exception(InvalidMessage(message, code))

    def _on_member_joined(self, data: dict) -> None:
        member = data["member"]
        if member["id"] == self.member_id:
            return
        self.members[member["id"]] = member
        # 새 멤버가 offer를 보내므로 링크만 만들고 대기
        self.orchestrator.create_link(member["id"])
        logger.info(f"[Session] 멤버 '{member['display_name']}' 입장, offer 대기")

    async def _on_member_left(self, data: dict) -> None:
        member_id = data["member_id"]
        member = self.members.pop(member_id, None)
        await self.orchestrator.close_link(member_id)
        name = member["display_name"] if member else member_id[:8]
        logger.info(f"[Session] 멤버 '{name}' 퇴장, 링크 정리")

    def _on_member_updated(self, data: dict) -> None:
        member = data["member"]
        if member["id"] == self.member_id:
            return
        view = self.members.setdefault(member["id"], {})
        view.update(member)

    async def _on_offer_received(self, data: dict) -> None:
        from_member_id = data["from_member_id"]
        try:
            if self.orchestrator.get_link(from_member_id) is None:
                self.orchestrator.create_link(from_member_id)
            answer = await self.orchestrator.make_answer(from_member_id, data["payload"])
        except VoiceRoomError as e:
            logger.error(f"[Session] 피어 {from_member_id[:8]} answer 실패: {e}")
            return

        if answer is not None:
            await self._send_addressed(MessageType.ANSWER, from_member_id, answer)

    async def _on_answer_received(self, data: dict) -> None:
        from_member_id = data["from_member_id"]
        try:
            await self.orchestrator.apply_remote_answer(from_member_id, data["payload"])
        except UnknownPeer as e:
            logger.warning(f"[Session] answer 무시: {e}")

    async def _on_candidate_received(self, data: dict) -> None:
        from_member_id = data["from_member_id"]
        try:
            await self.orchestrator.enqueue_remote_candidate(from_member_id, data["payload"])
        except UnknownPeer as e:
            logger.warning(f"[Session] candidate 무시: {e}")

    async def _on_reconnected(self, connection_id: str) -> None:
        """재연결 후 이전 멤버 ID로 같은 룸에 다시 입장하고 링크를 맞춥니다.

        서버가 끊김을 감지해 멤버를 제거한 뒤라면 새 레코드(다른 joined_at)가
        만들어지고, 다른 멤버들은 member_joined를 받아 offer를 기다립니다.
        이 경우 새로 입장한 것과 같이 모든 링크를 다시 만들어 offer를 보냅니다.
        """
        if self.room_id is None or self.display_name is None:
            return
        logger.info(f"[Session] 재연결, 룸 '{self.room_id}' 재입장 (member={self.member_id})")
        previous_joined_at = self.joined_at
        try:
            await self._request_join(self.room_id, self.display_name, self.member_id)
        except (VoiceRoomError, ConnectionError, asyncio.TimeoutError) as e:
            logger.error(f"[Session] 재입장 실패: {e}")
            return

        await self._reconcile_links(fresh=self.joined_at != previous_joined_at)

        state = self.orchestrator.voice_state
        await self._publish_state({"muted": state.muted, "speaking": self.speaking})

    async def _reconcile_links(self, fresh: bool) -> None:
        """재입장 스냅샷 기준으로 링크를 정리합니다.

        스냅샷에 없는 멤버의 링크는 닫습니다. 멤버 레코드가 새로 만들어졌으면
        남은 멤버 모두에게, 아니면 링크가 없는 멤버에게만 offer를 보냅니다.
        """
        for member_id in list(self.orchestrator.links):
            if fresh or member_id not in self.members:
                await self.orchestrator.close_link(member_id)

        targets = [m for m in self.members if self.orchestrator.get_link(m) is None]
        if targets:
            await asyncio.gather(*(self._initiate(m) for m in targets))
        logger.info(
            f"[Session] 재입장 링크 정리 (새 레코드={fresh}, offer {len(targets)}명, "
            f"유지 {len(self.members) - len(targets)}명)"
        )

    # ------------------------------------------------------------------
    # 오케스트레이터 이벤트 핸들러
    # ------------------------------------------------------------------

    async def _on_local_candidate(self, event: LocalCandidate) -> None:
        await self._send_addressed(MessageType.ICE_CANDIDATE, event.member_id, event.candidate)

    async def _on_restart_offer(self, event: RestartOffer) -> None:
        await self._send_addressed(MessageType.OFFER, event.member_id, event.description)

    def _on_peer_disconnected(self, event: PeerDisconnected) -> None:
        error = NegotiationFailure(event.member_id, event.reason)
        logger.error(f"[Session] {error.message}")
        view = self.members.get(event.member_id)
        if view is not None:
            view["link"] = "disconnected"

    async def _on_level(self, sample: LevelSample) -> None:
        """레벨이 임계값을 넘나들 때만 speaking 상태를 게시합니다."""
        speaking = not sample.muted and sample.level >= self.speaking_threshold
        if speaking == self.speaking:
            return
        self.speaking = speaking
        await self._publish_state({"speaking": speaking})
