"""보이스 룸 시그널링 WebSocket 라우터.

WebSocket 연결을 시그널링 릴레이에 등록하고, 수신 메시지를 순서대로 릴레이에
전달합니다. 연결이 끊기면(정상 종료든 네트워크 끊김이든) 릴레이의 disconnect
경로로 정리합니다.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from voicerooms.signaling import error_message
from voicerooms.shared import InvalidMessage
from .deps import WS_UNAUTHORIZED, get_ws_relay, verify_ws_token

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = Query(None)):
    """시그널링 WebSocket 엔드포인트.

    Message Flow:
        1. 토큰 검증 (ACCESS_PASSWORD 설정 시) 실패하면 4001로 종료
        2. 연결 수락 후 connected(connection_id) 전송
        3. 메시지 루프: {"type", "data"} JSON을 릴레이로 전달
        4. 종료 시 relay.disconnect()로 member_left 브로드캐스트

    Args:
        websocket: FastAPI WebSocket 연결 객체
        token: 접근 토큰 (쿼리 파라미터)
    """
    relay = get_ws_relay(websocket)
    if relay is None:
        await websocket.close(code=1011, reason="Server not ready")
        return

    if not verify_ws_token(token):
        logger.warning("[Signaling] WebSocket 인증 실패")
        await websocket.close(code=WS_UNAUTHORIZED, reason="Unauthorized")
        return

    await websocket.accept()
    connection_id = await relay.connect(websocket)

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                error = InvalidMessage("Message is not valid JSON")
                await websocket.send_json(error_message(error.message, error.code))
                continue
            await relay.handle_message(connection_id, message)
    except WebSocketDisconnect:
        logger.info(f"[Signaling] 연결 {connection_id[:8]} 종료")
    except Exception as e:
        logger.error(f"[Signaling] 연결 {connection_id[:8]} 오류: {e}")
    finally:
        await relay.disconnect(connection_id)
