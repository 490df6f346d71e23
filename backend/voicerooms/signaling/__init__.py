"""시그널링 모듈.

시그널링 프로토콜 정의와 메시지 릴레이를 제공합니다.

Classes:
    SignalingRelay: 연결 관리 및 주소 지정/룸 브로드캐스트 라우팅
    MessageType: 메시지 타입 상수
"""

from .protocol import (
    MessageType,
    ADDRESSED_TYPES,
    JoinData,
    LeaveData,
    UpdateStateData,
    AddressedData,
    MemberStateFields,
    envelope,
    error_message,
    parse_inbound,
)
from .relay import SignalingRelay, Connection

__all__ = [
    "SignalingRelay",
    "Connection",
    "MessageType",
    "ADDRESSED_TYPES",
    "JoinData",
    "LeaveData",
    "UpdateStateData",
    "AddressedData",
    "MemberStateFields",
    "envelope",
    "error_message",
    "parse_inbound",
]
