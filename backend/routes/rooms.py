"""룸 조회 API 라우터."""

from fastapi import APIRouter, Depends

from voicerooms.presence import PresenceRegistry
from .deps import get_registry, verify_auth_header

router = APIRouter(prefix="/api/rooms", tags=["rooms"])


@router.get("")
async def get_rooms_api(
    registry: PresenceRegistry = Depends(get_registry),
    _: bool = Depends(verify_auth_header),
):
    """활성화된 모든 룸의 목록을 조회합니다.

    빈 룸(보관 중)은 포함하지 않습니다.

    Returns:
        dict: {"rooms": [{"room_id", "member_count", "capacity", "members"}, ...]}
    """
    return {"rooms": registry.get_room_list()}
