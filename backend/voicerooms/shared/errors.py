"""보이스 룸 예외 계층.

서버(릴레이)와 클라이언트(오케스트레이터) 양쪽에서 사용하는 예외를 정의합니다.
각 예외는 프로토콜 `error` 메시지에 그대로 실리는 고정 `code` 값을 가집니다.
"""

from typing import Optional


class VoiceRoomError(Exception):
    """모든 보이스 룸 예외의 기반 클래스."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> dict:
        """`error` 메시지의 data 필드로 변환합니다."""
        return {"message": self.message, "code": self.code}


class RoomFull(VoiceRoomError):
    """룸 정원 초과로 입장이 거부됨. 룸 상태는 변경되지 않습니다."""

    code = "ROOM_FULL"

    def __init__(self, room_id: str, capacity: int):
        super().__init__(f"Room '{room_id}' is full ({capacity} members)")
        self.room_id = room_id
        self.capacity = capacity


class UnknownPeer(VoiceRoomError):
    """존재하지 않는 멤버/링크를 참조함."""

    code = "UNKNOWN_PEER"

    def __init__(self, member_id: str):
        super().__init__(f"No link for member '{member_id}'")
        self.member_id = member_id


class PermissionDenied(VoiceRoomError):
    """마이크 접근이 거부됨. 사용자가 다시 시도할 때까지 세션에 치명적입니다."""

    code = "PERMISSION_DENIED"


class NegotiationFailure(VoiceRoomError):
    """ICE/연결 실패. 자동 ICE 재시작 1회 후에도 실패하면 발생합니다."""

    code = "NEGOTIATION_FAILED"

    def __init__(self, member_id: str, reason: str = ""):
        super().__init__(f"Negotiation with '{member_id}' failed: {reason}".rstrip(": "))
        self.member_id = member_id


class DeviceError(VoiceRoomError):
    """입력 장치 전환 실패. 이전 장치가 그대로 유지됩니다."""

    code = "DEVICE_ERROR"


class InvalidMessage(VoiceRoomError):
    """형식이 잘못된 시그널링 메시지."""

    code = "INVALID_MESSAGE"
