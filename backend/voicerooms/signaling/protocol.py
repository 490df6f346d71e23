"""시그널링 메시지 프로토콜 정의.

모든 메시지는 `{"type": <str>, "data": {...}}` 형태의 JSON 봉투로 전송됩니다.
수신 메시지의 data 필드는 Pydantic 모델로 검증합니다.
"""

import re
from typing import Optional, Tuple, Type

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..presence.config import room_settings
from ..shared.errors import InvalidMessage

MEMBER_ID_PATTERN = r"^[A-Za-z0-9_-]{1,64}$"


class MessageType:
    """메시지 타입 상수."""

    # Client -> Server
    JOIN = "join"
    LEAVE = "leave"
    UPDATE_STATE = "update_state"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice_candidate"
    GET_ROOMS = "get_rooms"

    # Server -> Client
    CONNECTED = "connected"
    ROOM_SNAPSHOT = "room_snapshot"
    MEMBER_JOINED = "member_joined"
    MEMBER_LEFT = "member_left"
    MEMBER_UPDATED = "member_updated"
    OFFER_RECEIVED = "offer_received"
    ANSWER_RECEIVED = "answer_received"
    ICE_CANDIDATE_RECEIVED = "ice_candidate_received"
    ROOMS_LIST = "rooms_list"
    ERROR = "error"


# 주소 지정 메시지: 수신 타입 -> 전달 타입
ADDRESSED_TYPES = {
    MessageType.OFFER: MessageType.OFFER_RECEIVED,
    MessageType.ANSWER: MessageType.ANSWER_RECEIVED,
    MessageType.ICE_CANDIDATE: MessageType.ICE_CANDIDATE_RECEIVED,
}


class JoinData(BaseModel):
    """Client → Server: 룸 입장 요청."""

    room_id: str = Field(..., description="입장할 룸 ID")
    display_name: str = Field(..., description="표시 이름")
    member_id: Optional[str] = Field(
        default=None, pattern=MEMBER_ID_PATTERN, description="재연결 시 이전 멤버 ID"
    )
    reconnect_token: Optional[str] = Field(
        default=None, max_length=128, description="room_snapshot으로 받은 재연결 토큰"
    )

    @field_validator("room_id")
    @classmethod
    def validate_room_id(cls, v: str) -> str:
        if not re.match(room_settings.ROOM_ID_PATTERN, v):
            raise ValueError("room_id 형식이 올바르지 않습니다")
        return v

    @field_validator("display_name")
    @classmethod
    def validate_display_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("display_name이 비어 있습니다")
        if len(v) > room_settings.MAX_DISPLAY_NAME_LENGTH:
            raise ValueError(
                f"display_name은 {room_settings.MAX_DISPLAY_NAME_LENGTH}자 이하여야 합니다"
            )
        return v


class LeaveData(BaseModel):
    """Client → Server: 룸 퇴장 요청."""

    room_id: str
    member_id: str


class MemberStateFields(BaseModel):
    """갱신 가능한 멤버 상태 필드."""

    model_config = {"extra": "forbid"}

    muted: Optional[bool] = None
    speaking: Optional[bool] = None


class UpdateStateData(BaseModel):
    """Client → Server: 멤버 상태 갱신."""

    room_id: str
    fields: MemberStateFields


class AddressedData(BaseModel):
    """Client → Server: offer / answer / ice_candidate."""

    room_id: str
    target_member_id: str
    payload: dict = Field(..., description="SDP 또는 ICE candidate 딕셔너리")


INBOUND_MODELS: dict = {
    MessageType.JOIN: JoinData,
    MessageType.LEAVE: LeaveData,
    MessageType.UPDATE_STATE: UpdateStateData,
    MessageType.OFFER: AddressedData,
    MessageType.ANSWER: AddressedData,
    MessageType.ICE_CANDIDATE: AddressedData,
    MessageType.GET_ROOMS: None,
}


def envelope(message_type: str, data: Optional[dict] = None) -> dict:
    """메시지 봉투를 생성합니다."""
    return {"type": message_type, "data": data or {}}


def error_message(message: str, code: Optional[str] = None) -> dict:
    data = {"message": message}
    if code:
        data["code"] = code
    return envelope(MessageType.ERROR, data)


def parse_inbound(message: dict) -> Tuple[str, Optional[BaseModel]]:
    """수신 메시지를 검증하고 (타입, data 모델)을 반환합니다.

    Raises:
        InvalidMessage: 타입을 알 수 없거나 data 검증에 실패한 경우
    """
    if not isinstance(message, dict):
        raise InvalidMessage("Message must be a JSON object")

    message_type = message.get("type")
    if message_type not in INBOUND_MODELS:
        raise InvalidMessage(f"Unknown message type: {message_type}")

    model: Optional[Type[BaseModel]] = INBOUND_MODELS[message_type]
    if model is None:
        return message_type, None

    data = message.get("data")
    if not isinstance(data, dict):
        raise InvalidMessage(f"'{message_type}' requires a data object")
    try:
        return message_type, model(**data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise InvalidMessage(f"Invalid '{message_type}' message: {location} {first.get('msg')}".strip())
