"""공통 테스트 픽스처.

네트워크/오디오 장치 없이 실행할 수 있도록 트랜스포트, RTCPeerConnection,
마이크 캡처를 가짜 객체로 대체합니다.
"""

import asyncio
import fractions
from typing import List, Optional

import numpy as np
import pytest
from aiortc import MediaStreamTrack, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame
from pyee.asyncio import AsyncIOEventEmitter

from voicerooms.presence import PresenceRegistry
from voicerooms.signaling import SignalingRelay
from voicerooms.webrtc.capture import CaptureConstraints, MediaHandle
from voicerooms.webrtc.orchestrator import PeerConnectionOrchestrator


# ============================================================================
# Signaling fakes
# ============================================================================


class FakeTransport:
    """send_json만 구현한 가짜 WebSocket."""

    def __init__(self, fail: bool = False):
        self.sent: List[dict] = []
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def of_type(self, message_type: str) -> List[dict]:
        return [m for m in self.sent if m["type"] == message_type]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock) -> PresenceRegistry:
    return PresenceRegistry(capacity=4, clock=clock)


@pytest.fixture
def relay(registry) -> SignalingRelay:
    return SignalingRelay(registry)


# ============================================================================
# WebRTC fakes
# ============================================================================


def make_frame(amplitude: int = 0, samples: int = 960) -> AudioFrame:
    """48kHz 모노 s16 프레임을 만듭니다."""
    data = np.full((1, samples), amplitude, dtype=np.int16)
    frame = AudioFrame.from_ndarray(data, format="s16", layout="mono")
    frame.sample_rate = 48000
    frame.pts = 0
    frame.time_base = fractions.Fraction(1, 48000)
    return frame


class FakeAudioTrack(MediaStreamTrack):
    """일정 진폭의 프레임을 내보내는 가짜 마이크 트랙."""

    kind = "audio"

    def __init__(self, amplitude: int = 0):
        super().__init__()
        self.amplitude = amplitude

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        await asyncio.sleep(0.02)
        return make_frame(self.amplitude)


class FakeSender:
    def __init__(self, track):
        self.track = track

    def replaceTrack(self, track):
        self.track = track


class FakePeerConnection(AsyncIOEventEmitter):
    """오케스트레이터가 사용하는 RTCPeerConnection 인터페이스만 구현한 가짜 객체."""

    def __init__(self, configuration=None):
        super().__init__()
        self.configuration = configuration
        self.connectionState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.senders: List[FakeSender] = []
        self.transceivers: List[tuple] = []
        self.added_candidates: list = []
        self.closed = False

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def addTransceiver(self, kind, direction=None):
        self.transceivers.append((kind, direction))

    async def createOffer(self):
        return RTCSessionDescription(sdp=f"offer-{id(self)}", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=f"answer-{id(self)}", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self.added_candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class PeerConnectionFactory:
    """생성한 FakePeerConnection을 기록하는 팩토리."""

    def __init__(self):
        self.created: List[FakePeerConnection] = []

    def __call__(self, configuration=None) -> FakePeerConnection:
        pc = FakePeerConnection(configuration)
        self.created.append(pc)
        return pc


class CaptureFactory:
    """호출 횟수를 기록하고 실패를 주입할 수 있는 가짜 마이크 팩토리."""

    def __init__(self):
        self.calls: List[CaptureConstraints] = []
        self.error: Optional[Exception] = None
        self.handles: List[MediaHandle] = []
        # 설정하면 이벤트가 set될 때까지 장치 열기가 끝나지 않음
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, constraints: Optional[CaptureConstraints] = None) -> MediaHandle:
        constraints = constraints or CaptureConstraints()
        self.calls.append(constraints)
        if self.error is not None:
            raise self.error
        handle = MediaHandle(track=FakeAudioTrack(), constraints=constraints)
        self.handles.append(handle)
        if self.gate is not None:
            await self.gate.wait()
        return handle


def candidate(port: int) -> dict:
    return {
        "candidate": f"candidate:1 1 udp 2122260223 192.168.1.2 {port} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


async def settle(rounds: int = 10) -> None:
    """예약된 이벤트 핸들러 태스크가 실행되도록 루프를 양보합니다."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def pc_factory() -> PeerConnectionFactory:
    return PeerConnectionFactory()


@pytest.fixture
def capture_factory() -> CaptureFactory:
    return CaptureFactory()


@pytest.fixture
async def orchestrator(pc_factory, capture_factory):
    orch = PeerConnectionOrchestrator(
        local_member_id="bbbb",
        capture_factory=capture_factory,
        peer_connection_factory=pc_factory,
        rtc_configuration=object(),
    )
    yield orch
    await orch.close_all()
