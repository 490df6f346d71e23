"""공유 모듈.

서버(릴레이)와 클라이언트(오케스트레이터)가 함께 쓰는 예외를 제공합니다.
"""

from .errors import (
    VoiceRoomError,
    RoomFull,
    UnknownPeer,
    PermissionDenied,
    NegotiationFailure,
    DeviceError,
    InvalidMessage,
)

__all__ = [
    "VoiceRoomError",
    "RoomFull",
    "UnknownPeer",
    "PermissionDenied",
    "NegotiationFailure",
    "DeviceError",
    "InvalidMessage",
]
