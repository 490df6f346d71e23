"""세션 모듈.

시그널링 클라이언트와 세션 코디네이터를 제공합니다.

Classes:
    SignalingClient: 재연결을 지원하는 시그널링 WebSocket 클라이언트
    SessionCoordinator: 프레즌스 이벤트와 WebRTC 링크 연결
"""

from .client import SignalingClient, UNAUTHORIZED_CLOSE_CODE
from .coordinator import SessionCoordinator

__all__ = [
    "SignalingClient",
    "SessionCoordinator",
    "UNAUTHORIZED_CLOSE_CODE",
]
