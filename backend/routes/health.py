"""Health Check API 라우터."""

from fastapi import APIRouter, Depends

from voicerooms.presence import PresenceRegistry
from .deps import get_registry

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_check(registry: PresenceRegistry = Depends(get_registry)):
    """서버 상태와 룸/멤버 수를 반환합니다.

    Returns:
        dict: status, rooms(활성 룸 수), members(접속 멤버 수)
    """
    stats = registry.stats()
    return {
        "status": "ok",
        "rooms": stats["rooms"],
        "members": stats["members"],
    }
