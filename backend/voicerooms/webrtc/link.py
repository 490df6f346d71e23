"""협상 링크(Negotiation Link) 모듈.

원격 멤버 한 명당 하나씩 존재하는 협상 상태 머신을 정의합니다.

State Machine:
    idle → negotiating(offer-sent | answer-sent) → connected
    connected/negotiating → failed → negotiating (ICE 재시작)
    모든 상태 → closed
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, List, Optional

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class NegotiationRole(str, Enum):
    OFFER_SENT = "offer-sent"
    ANSWER_SENT = "answer-sent"


_ALLOWED_TRANSITIONS = {
    LinkState.IDLE: {LinkState.NEGOTIATING, LinkState.FAILED, LinkState.CLOSED},
    LinkState.NEGOTIATING: {LinkState.NEGOTIATING, LinkState.CONNECTED, LinkState.FAILED, LinkState.CLOSED},
    # connected → negotiating: 재협상
    LinkState.CONNECTED: {LinkState.NEGOTIATING, LinkState.FAILED, LinkState.CLOSED},
    LinkState.FAILED: {LinkState.NEGOTIATING, LinkState.CLOSED},
    LinkState.CLOSED: set(),
}


@dataclass
class NegotiationLink:
    """원격 멤버 한 명과의 P2P 오디오 세션 상태.

    오케스트레이터만 소유하며 remote_member_id로 조회됩니다.

    Attributes:
        remote_member_id (str): 원격 멤버 ID
        pc (Any): RTCPeerConnection (ICE 재시작 시 교체됨)
        state (LinkState): 현재 상태
        role (Optional[NegotiationRole]): negotiating 상태에서의 역할
        local_description (Optional[dict]): 마지막으로 설정한 로컬 SDP
        remote_description (Optional[dict]): 마지막으로 설정한 원격 SDP
        pending_candidates (Deque[dict]): 원격 SDP 설정 전 도착한 ICE candidate (도착 순서)
        senders (List[Any]): 로컬 오디오 송신자
        receivers (List[Any]): 원격 오디오 트랙 (볼륨 적용)
        restart_attempts (int): 자동 ICE 재시작 시도 횟수
    """
    remote_member_id: str
    pc: Any
    state: LinkState = LinkState.IDLE
    role: Optional[NegotiationRole] = None
    local_description: Optional[dict] = None
    remote_description: Optional[dict] = None
    pending_candidates: Deque[dict] = field(default_factory=deque)
    senders: List[Any] = field(default_factory=list)
    receivers: List[Any] = field(default_factory=list)
    restart_attempts: int = 0
    flushing: bool = False

    @property
    def is_closed(self) -> bool:
        return self.state == LinkState.CLOSED

    @property
    def has_offer_pending(self) -> bool:
        """로컬 offer를 보냈고 아직 answer를 받지 못한 상태."""
        return (
            self.state == LinkState.NEGOTIATING
            and self.role == NegotiationRole.OFFER_SENT
            and self.remote_description is None
        )

    def can_transition(self, new_state: LinkState) -> bool:
        return new_state in _ALLOWED_TRANSITIONS[self.state]

    def transition(self, new_state: LinkState, role: Optional[NegotiationRole] = None) -> bool:
        """상태를 전이합니다. 허용되지 않은 전이는 무시하고 False를 반환합니다."""
        if not self.can_transition(new_state):
            logger.warning(
                f"[WebRTC] 링크 {self.remote_member_id[:8]} 잘못된 상태 전이 무시: "
                f"{self.state.value} -> {new_state.value}"
            )
            return False

        previous = self.state
        self.state = new_state
        self.role = role if new_state == LinkState.NEGOTIATING else None
        if previous != new_state or role is not None:
            suffix = f"({role.value})" if role else ""
            logger.info(
                f"[WebRTC] 링크 {self.remote_member_id[:8]} 상태: {previous.value} -> {new_state.value}{suffix}"
            )
        return True

    def reset_session(self, pc: Any) -> None:
        """새 RTCPeerConnection으로 교체하고 이전 세션의 협상 상태를 버립니다."""
        self.pc = pc
        self.local_description = None
        self.remote_description = None
        self.pending_candidates.clear()
        self.senders = []
        self.receivers = []
        self.flushing = False
