"""시그널링 클라이언트 모듈.

websockets 라이브러리로 시그널링 서버에 연결하고, 수신 메시지를 타입 이름의
pyee 이벤트로 내보냅니다. 연결이 끊기면 유예 시간 안에서 지수 백오프로
자동 재연결합니다.

Events:
    <message type> (dict): 서버 메시지마다 타입 이름으로 data를 전달
        (예: "room_snapshot", "member_joined", "offer_received")
    reconnected (str): 재연결 성공, 새 connection_id
    disconnected (str): 재연결 포기 또는 인증 실패, 사유
"""

import asyncio
import json
import logging
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from pyee.asyncio import AsyncIOEventEmitter

from ..signaling.protocol import MessageType, envelope
from ..webrtc.config import client_config

logger = logging.getLogger(__name__)

# 서버가 인증 실패 시 사용하는 close code
UNAUTHORIZED_CLOSE_CODE = 4001


class SignalingClient(AsyncIOEventEmitter):
    """재연결을 지원하는 시그널링 WebSocket 클라이언트.

    Attributes:
        url (str): 시그널링 서버 URL
        connection_id (Optional[str]): 서버가 부여한 현재 연결 ID
        connected (bool): 현재 연결 여부
    """

    def __init__(
        self,
        url: str = client_config.SERVER_URL,
        token: Optional[str] = client_config.ACCESS_TOKEN,
        grace_period: float = client_config.RECONNECT_GRACE_PERIOD,
        initial_delay: float = client_config.RECONNECT_INITIAL_DELAY,
        max_delay: float = client_config.RECONNECT_MAX_DELAY,
        connect: Callable[..., Any] = websockets.connect,
    ):
        super().__init__()
        self.url = url
        self.token = token
        self.grace_period = grace_period
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._connect = connect

        self.connection_id: Optional[str] = None
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False
        self._connected_event = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def _endpoint(self) -> str:
        if not self.token:
            return self.url
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'token': self.token})}"

    async def start(self) -> str:
        """서버에 연결하고 connected 메시지를 받을 때까지 기다립니다.

        Returns:
            str: 서버가 부여한 connection_id

        Raises:
            ConnectionError: 첫 연결 실패
        """
        self._closing = False
        await self._open()
        self._reader = asyncio.create_task(self._run())
        return self.connection_id

    async def _open(self) -> None:
        try:
            ws = await self._connect(self._endpoint())
        except (OSError, WebSocketException) as e:
            raise ConnectionError(f"Cannot connect to signaling server {self.url}: {e}")

        try:
            raw = await ws.recv()
        except ConnectionClosed as e:
            raise ConnectionError(f"Signaling server closed the connection: {e}")

        message = json.loads(raw)
        if message.get("type") != MessageType.CONNECTED:
            await ws.close()
            raise ConnectionError(f"Unexpected first message: {message.get('type')}")

        self._ws = ws
        self.connection_id = message["data"]["connection_id"]
        self._connected_event.set()
        logger.info(f"[Session] 시그널링 서버 연결: {self.url} (connection={self.connection_id[:8]})")

    async def _run(self) -> None:
        """수신 루프. 연결이 끊기면 유예 시간 안에서 재연결을 시도합니다."""
        while not self._closing:
            try:
                async for raw in self._ws:
                    self._dispatch(raw)
            except ConnectionClosed as e:
                code = e.rcvd.code if e.rcvd is not None else None
                if code == UNAUTHORIZED_CLOSE_CODE:
                    logger.error("[Session] 인증 실패로 연결 종료")
                    self._mark_disconnected()
                    self.emit("disconnected", "unauthorized")
                    return

            if self._closing:
                return

            self._mark_disconnected()
            logger.warning("[Session] 시그널링 연결 끊김, 재연결 시도")
            if not await self._reconnect():
                self.emit("disconnected", "grace_period_expired")
                return
            self.emit("reconnected", self.connection_id)

    def _dispatch(self, raw) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("[Session] JSON이 아닌 메시지 무시")
            return

        message_type = message.get("type")
        if not message_type:
            return
        self.emit(message_type, message.get("data") or {})

    def _mark_disconnected(self) -> None:
        self._ws = None
        self._connected_event.clear()

    async def _reconnect(self) -> bool:
        """지수 백오프로 재연결합니다. 유예 시간을 넘기면 False를 반환합니다."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.grace_period
        delay = self.initial_delay
        attempt = 0

        while not self._closing:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.error(f"[Session] 재연결 유예 시간 {self.grace_period}s 초과, 포기")
                return False

            await asyncio.sleep(min(delay, remaining))
            attempt += 1
            try:
                await self._open()
                logger.info(f"[Session] 재연결 성공 (시도 {attempt}회)")
                return True
            except ConnectionError as e:
                logger.warning(f"[Session] 재연결 실패 (시도 {attempt}회): {e}")
                delay = min(delay * 2, self.max_delay)
        return False

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._connected_event.wait(), timeout)

    async def send(self, message_type: str, data: dict) -> bool:
        """메시지를 전송합니다. 연결이 없으면 False를 반환합니다."""
        if self._ws is None:
            logger.debug(f"[Session] 연결 없음, {message_type} 전송 생략")
            return False
        try:
            await self._ws.send(json.dumps(envelope(message_type, data)))
            return True
        except ConnectionClosed as e:
            logger.warning(f"[Session] {message_type} 전송 실패: {e}")
            return False

    async def close(self) -> None:
        """연결을 닫고 재연결을 중지합니다."""
        self._closing = True
        ws = self._ws
        self._mark_disconnected()
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        logger.info("[Session] 시그널링 연결 종료")
