"""공유 의존성 모듈.

라우터들이 공통으로 사용하는 의존성을 정의합니다.
레지스트리와 릴레이는 app.py lifespan에서 생성되어 `app.state`에 보관됩니다.
"""

import os
from typing import Optional

from fastapi import Header, HTTPException, Request, WebSocket

from voicerooms.presence import PresenceRegistry
from voicerooms.signaling import SignalingRelay

# 접근 비밀번호 설정 (비어 있으면 인증 없음)
ACCESS_PASSWORD = os.getenv("ACCESS_PASSWORD", "")

# WebSocket 인증 실패 close code
WS_UNAUTHORIZED = 4001


def get_registry(request: Request) -> PresenceRegistry:
    """HTTP 요청에서 프레즌스 레지스트리를 가져옵니다."""
    return request.app.state.registry


def get_ws_relay(websocket: WebSocket) -> Optional[SignalingRelay]:
    """WebSocket 연결에서 시그널링 릴레이를 가져옵니다. 초기화 전이면 None."""
    return getattr(websocket.app.state, "relay", None)


async def verify_auth_header(authorization: Optional[str] = Header(None)) -> bool:
    """Authorization: Bearer 헤더를 검증합니다.

    Raises:
        HTTPException: 인증 실패 시 401
    """
    if not ACCESS_PASSWORD:
        return True
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization format")
    if token != ACCESS_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid password")
    return True


def verify_ws_token(token: Optional[str]) -> bool:
    """WebSocket 쿼리 파라미터 토큰을 검증합니다."""
    if not ACCESS_PASSWORD:
        return True
    return token == ACCESS_PASSWORD
