"""보이스 룸 패키지.

소규모 룸 기반 P2P 음성 채팅을 위한 프레즌스 레지스트리, 시그널링 릴레이,
클라이언트 측 WebRTC 오케스트레이터와 세션 코디네이터를 제공합니다.

Subpackages:
    presence: 룸/멤버 레지스트리 (서버)
    signaling: 프로토콜 정의 및 메시지 릴레이 (서버)
    webrtc: 피어 연결 오케스트레이터 (클라이언트)
    session: 시그널링 클라이언트 및 세션 코디네이터 (클라이언트)
    shared: 공통 예외

Note:
    서버는 aiortc 없이 presence/signaling만 사용하므로 webrtc/session은
    여기서 import하지 않습니다.
"""

from .presence import PresenceRegistry, Member, Room, JoinResult, room_settings
from .signaling import SignalingRelay, MessageType
from .shared import (
    VoiceRoomError,
    RoomFull,
    UnknownPeer,
    PermissionDenied,
    NegotiationFailure,
    DeviceError,
    InvalidMessage,
)

__all__ = [
    "PresenceRegistry",
    "Member",
    "Room",
    "JoinResult",
    "room_settings",
    "SignalingRelay",
    "MessageType",
    "VoiceRoomError",
    "RoomFull",
    "UnknownPeer",
    "PermissionDenied",
    "NegotiationFailure",
    "DeviceError",
    "InvalidMessage",
]
