"""오케스트레이터 이벤트 페이로드.

PeerConnectionOrchestrator는 pyee 이벤트 이미터이며, 각 이벤트는 아래
데이터 클래스 하나를 인자로 전달합니다.
"""

from dataclasses import dataclass
from typing import Any, Optional

from .link import LinkState


class OrchestratorEvent:
    """이벤트 이름 상수."""

    LINK_STATE = "link_state"
    LOCAL_CANDIDATE = "local_candidate"
    RESTART_OFFER = "restart_offer"
    REMOTE_TRACK = "remote_track"
    PEER_DISCONNECTED = "peer_disconnected"
    LEVEL = "level"


@dataclass(frozen=True)
class LinkStateChanged:
    member_id: str
    state: LinkState
    previous: Optional[LinkState] = None


@dataclass(frozen=True)
class LocalCandidate:
    """원격 멤버에게 보내야 할 로컬 ICE candidate."""
    member_id: str
    candidate: dict


@dataclass(frozen=True)
class RestartOffer:
    """ICE 재시작을 위해 새로 생성된 offer. 원격 멤버에게 전송해야 함."""
    member_id: str
    description: dict


@dataclass(frozen=True)
class RemoteTrack:
    member_id: str
    track: Any


@dataclass(frozen=True)
class PeerDisconnected:
    """자동 재시작 후에도 연결에 실패한 피어."""
    member_id: str
    reason: str


@dataclass(frozen=True)
class LevelSample:
    level: int
    muted: bool
