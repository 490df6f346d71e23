"""WebRTC 피어 연결 오케스트레이터 모듈.

클라이언트 측에서 원격 멤버마다 하나의 협상 링크(RTCPeerConnection)를 관리하는
메시(mesh) 구조의 P2P 오디오 연결 관리자입니다.

주요 기능:
    - 마이크 캡처 (세션당 1회) 및 음소거
    - 원격 멤버별 offer/answer/ICE candidate 처리
    - 원격 SDP 설정 전 도착한 candidate 큐잉 및 순서 보장 플러시
    - 연결 실패 시 자동 ICE 재시작 1회
    - 오디오 레벨 미터링, 입력 장치 전환 (재협상 없이 트랙 교체)
    - 글레어(양쪽 동시 offer) 처리: 멤버 ID가 작은 쪽의 offer가 우선

Architecture:
    - Mesh: 룸의 다른 멤버 각각과 직접 연결 (최대 capacity - 1개)
    - MediaRelay: 로컬 마이크 트랙 하나를 모든 링크와 미터가 독립적으로 구독
    - pyee 이벤트: 시그널링이 필요한 출력(ICE candidate, 재시작 offer)과 상태 변화는
      이벤트로 내보내고, 세션 코디네이터가 구독/해제

WebRTC Flow:
    1. initialize_capture(): 마이크 열기
    2. create_link(): 원격 멤버별 RTCPeerConnection 생성, 로컬 트랙 추가
    3. make_offer() / make_answer() / apply_remote_answer()
    4. enqueue_remote_candidate(): 원격 SDP 설정 전이면 큐에 보관
    5. close_link() / close_all(): 연결 종료 및 리소스 해제

Examples:
    기본 사용법:
        >>> orchestrator = PeerConnectionOrchestrator(local_member_id="a1")
        >>> await orchestrator.initialize_capture()
        >>> orchestrator.create_link("b2")
        >>> offer = await orchestrator.make_offer("b2")
        >>> # ... 시그널링으로 offer 전송, answer 수신 ...
        >>> await orchestrator.apply_remote_answer("b2", answer)
        >>> await orchestrator.close_all()

See Also:
    link.py: 링크 상태 머신
    session/coordinator.py: 프레즌스 이벤트와 오케스트레이터 연결
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamError
from aiortc.sdp import candidate_from_sdp
from pyee.asyncio import AsyncIOEventEmitter

from .capture import CaptureConstraints, MediaHandle, open_microphone
from .config import build_rtc_configuration, client_config, media_config
from .events import (
    LevelSample,
    LinkStateChanged,
    LocalCandidate,
    OrchestratorEvent,
    PeerDisconnected,
    RemoteTrack,
    RestartOffer,
)
from .link import LinkState, NegotiationLink, NegotiationRole
from .tracks import LevelMeter, LocalAudioTrack, VolumeTrack
from ..shared.errors import DeviceError, PermissionDenied, UnknownPeer

logger = logging.getLogger(__name__)

CaptureFactory = Callable[[Optional[CaptureConstraints]], Awaitable[MediaHandle]]
PeerConnectionFactory = Callable[[Any], Any]


def _default_peer_connection_factory(configuration) -> RTCPeerConnection:
    return RTCPeerConnection(configuration=configuration)


@dataclass
class LocalVoiceState:
    """클라이언트당 하나인 로컬 음성 상태. 오케스트레이터만 변경합니다."""
    muted: bool = False
    volume: int = 100
    audio_level: int = 0
    capturing: bool = False


def description_to_dict(description) -> dict:
    return {"sdp": description.sdp, "type": description.type}


def parse_candidate(candidate: dict):
    """시그널링으로 받은 candidate 딕셔너리를 aiortc RTCIceCandidate로 변환합니다.

    브라우저는 {"candidate": "candidate:...", "sdpMid": ..., "sdpMLineIndex": ...}
    형태로 보냅니다. 빈 candidate 문자열(end-of-candidates)이면 None을 반환합니다.
    """
    candidate_str = candidate.get("candidate", "") or ""
    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[10:]
    if not candidate_str.strip():
        return None

    ice_candidate = candidate_from_sdp(candidate_str)
    ice_candidate.sdpMid = candidate.get("sdpMid")
    ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
    return ice_candidate


class PeerConnectionOrchestrator(AsyncIOEventEmitter):
    """원격 멤버별 WebRTC 협상 링크를 관리하는 클래스.

    Events:
        link_state (LinkStateChanged): 링크 상태 변경
        local_candidate (LocalCandidate): 원격 멤버에게 보낼 로컬 ICE candidate
        restart_offer (RestartOffer): ICE 재시작 offer (원격 멤버에게 보내야 함)
        remote_track (RemoteTrack): 원격 오디오 트랙 수신
        peer_disconnected (PeerDisconnected): 재시작 후에도 실패한 피어
        level (LevelSample): 주기적 오디오 레벨

    Attributes:
        links (Dict[str, NegotiationLink]): 원격 멤버 ID → 링크
        local_member_id (Optional[str]): 글레어 판정에 쓰는 로컬 멤버 ID
        relay (MediaRelay): 로컬 트랙 팬아웃용 aiortc 미디어 릴레이
    """

    def __init__(
        self,
        local_member_id: Optional[str] = None,
        capture_factory: CaptureFactory = open_microphone,
        peer_connection_factory: PeerConnectionFactory = _default_peer_connection_factory,
        rtc_configuration=None,
        max_ice_restarts: int = client_config.MAX_ICE_RESTARTS,
        meter_interval: float = media_config.METER_INTERVAL,
    ):
        super().__init__()
        self.local_member_id = local_member_id
        self._capture_factory = capture_factory
        self._pc_factory = peer_connection_factory
        self._rtc_configuration = rtc_configuration
        self.max_ice_restarts = max_ice_restarts
        self.meter_interval = meter_interval

        # remote_member_id -> NegotiationLink
        self.links: Dict[str, NegotiationLink] = {}

        self.relay = MediaRelay()
        self._voice_state = LocalVoiceState()
        self._constraints = CaptureConstraints()
        self._capture: Optional[MediaHandle] = None
        self._local_track: Optional[LocalAudioTrack] = None
        self._capture_lock = asyncio.Lock()
        self._capture_epoch = 0

        self._meter = LevelMeter(media_config.METER_FLOOR_DB)
        self._meter_consumer: Optional[asyncio.Task] = None
        self._meter_task: Optional[asyncio.Task] = None
        self._failure_tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # 로컬 음성 상태 / 캡처
    # ------------------------------------------------------------------

    @property
    def voice_state(self) -> LocalVoiceState:
        """로컬 음성 상태의 읽기 전용 복사본."""
        return replace(self._voice_state)

    @property
    def capture(self) -> Optional[MediaHandle]:
        return self._capture

    async def initialize_capture(self, constraints: Optional[CaptureConstraints] = None) -> MediaHandle:
        """마이크를 엽니다. 이미 열려 있으면 기존 핸들을 반환합니다.

        열기 도중 close_all()이 호출되면 열린 장치를 즉시 해제합니다.

        Raises:
            PermissionDenied: 마이크 접근 거부
            DeviceError: 장치 열기 실패
        """
        async with self._capture_lock:
            if self._capture is not None:
                return self._capture

            epoch = self._capture_epoch
            constraints = constraints or self._constraints
            try:
                handle = await self._capture_factory(constraints)
            except (PermissionDenied, DeviceError):
                raise
            except PermissionError as e:
                raise PermissionDenied(f"Microphone access denied: {e}")

            if epoch != self._capture_epoch:
                handle.stop()
                raise DeviceError("Capture was cancelled by session teardown")

            self._constraints = handle.constraints
            self._capture = handle
            self._local_track = LocalAudioTrack(handle.track, enabled=not self._voice_state.muted)
            self._voice_state.capturing = True

            # 캡처 전에 만들어진 아직 협상 전인 링크에 트랙 추가
            for link in self.links.values():
                if link.state == LinkState.IDLE and not link.senders:
                    link.senders.append(link.pc.addTrack(self.relay.subscribe(self._local_track)))

            self._start_meter_consumer()
            logger.info(f"[WebRTC] 마이크 캡처 시작 (device={handle.device_id or 'default'})")
            return handle

    def set_muted(self, muted: bool) -> None:
        """송출 오디오를 재협상 없이 끄거나 켭니다."""
        self._voice_state.muted = muted
        if self._local_track is not None:
            self._local_track.enabled = not muted
        if muted:
            self._voice_state.audio_level = 0
        logger.info(f"[WebRTC] 음소거 {'설정' if muted else '해제'}")

    def set_volume(self, volume: int) -> int:
        """원격 오디오 재생 볼륨(0..100)을 설정합니다."""
        volume = max(0, min(100, int(volume)))
        self._voice_state.volume = volume
        for link in self.links.values():
            for receiver in link.receivers:
                receiver.gain = volume / 100.0
        return volume

    def meter_level(self) -> int:
        """현재 마이크 레벨(0..100). 음소거 중이거나 캡처 전이면 0."""
        if self._voice_state.muted or not self._voice_state.capturing:
            return 0
        return self._meter.level

    def start_metering(self) -> asyncio.Task:
        """고정 주기로 레벨을 폴링해 voice_state를 갱신하고 level 이벤트를 냅니다."""
        if self._meter_task is None or self._meter_task.done():
            self._meter_task = asyncio.create_task(self._meter_loop())
        return self._meter_task

    async def _meter_loop(self) -> None:
        try:
            while True:
                level = self.meter_level()
                self._voice_state.audio_level = level
                self.emit(OrchestratorEvent.LEVEL, LevelSample(level=level, muted=self._voice_state.muted))
                await asyncio.sleep(self.meter_interval)
        except asyncio.CancelledError:
            pass

    def _start_meter_consumer(self) -> None:
        if self._meter_consumer is not None and not self._meter_consumer.done():
            self._meter_consumer.cancel()
        self._meter.reset()
        if self._local_track is None:
            return
        track = self.relay.subscribe(self._local_track)
        self._meter_consumer = asyncio.create_task(self._consume_meter_track(track))

    async def _consume_meter_track(self, track: MediaStreamTrack) -> None:
        """미터용 구독 트랙을 계속 소비하며 프레임 레벨을 계산합니다."""
        try:
            while True:
                frame = await track.recv()
                self._meter.feed(frame)
        except asyncio.CancelledError:
            pass
        except MediaStreamError:
            logger.info("[WebRTC] 미터 트랙 종료")
        finally:
            self._meter.reset()

    async def switch_input_device(self, device_id: str) -> MediaHandle:
        """입력 장치를 바꾸고 모든 링크의 송신 트랙을 재협상 없이 교체합니다.

        실패하면 이전 장치가 그대로 유지되며 부분 변경은 남지 않습니다.

        Raises:
            DeviceError: 새 장치를 열 수 없거나 트랙 교체 실패
        """
        async with self._capture_lock:
            constraints = self._constraints.with_device(device_id)
            try:
                handle = await self._capture_factory(constraints)
            except Exception as e:
                logger.error(f"[WebRTC] 입력 장치 전환 실패 ({device_id}): {e}")
                raise DeviceError(f"Cannot switch input device to '{device_id}': {e}")

            new_track = LocalAudioTrack(handle.track, enabled=not self._voice_state.muted)
            replaced: List[tuple] = []
            try:
                for link in self.links.values():
                    for sender in link.senders:
                        previous = sender.track
                        await self._replace_track(sender, self.relay.subscribe(new_track))
                        replaced.append((sender, previous))
            except Exception as e:
                # 이미 교체한 송신자를 원래 트랙으로 되돌림
                for sender, previous in replaced:
                    await self._replace_track(sender, previous)
                handle.stop()
                logger.error(f"[WebRTC] 송신 트랙 교체 실패, 이전 장치 유지: {e}")
                raise DeviceError(f"Cannot switch input device to '{device_id}': {e}")

            old_track, old_handle = self._local_track, self._capture
            self._local_track = new_track
            self._capture = handle
            self._constraints = handle.constraints
            self._voice_state.capturing = True
            self._start_meter_consumer()

            if old_track is not None:
                old_track.stop()
            if old_handle is not None:
                old_handle.stop()

            logger.info(f"[WebRTC] 입력 장치 전환 완료: {device_id} (링크 {len(self.links)}개)")
            return handle

    @staticmethod
    async def _replace_track(sender, track) -> None:
        result = sender.replaceTrack(track)
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # 링크 생성 / 협상
    # ------------------------------------------------------------------

    def _require_link(self, member_id: str) -> NegotiationLink:
        link = self.links.get(member_id)
        if link is None or link.is_closed:
            raise UnknownPeer(member_id)
        return link

    def get_link(self, member_id: str) -> Optional[NegotiationLink]:
        return self.links.get(member_id)

    def create_link(self, remote_member_id: str) -> NegotiationLink:
        """원격 멤버용 협상 링크를 생성합니다. 이미 있으면 기존 링크를 반환합니다."""
        existing = self.links.get(remote_member_id)
        if existing is not None and not existing.is_closed:
            return existing

        link = NegotiationLink(remote_member_id=remote_member_id, pc=None)
        self._attach_peer_connection(link)
        self.links[remote_member_id] = link
        logger.info(
            f"[WebRTC] 링크 생성: {remote_member_id[:8]} "
            f"(캡처={'on' if self._local_track else 'off'}, 총 {len(self.links)}개)"
        )
        return link

    def _attach_peer_connection(self, link: NegotiationLink) -> None:
        """새 RTCPeerConnection을 만들어 링크에 연결하고 이벤트 핸들러를 등록합니다."""
        configuration = self._rtc_configuration or build_rtc_configuration()
        pc = self._pc_factory(configuration)
        link.reset_session(pc)
        member_id = link.remote_member_id

        if self._local_track is not None:
            link.senders.append(pc.addTrack(self.relay.subscribe(self._local_track)))
        else:
            # 캡처 없이도 원격 오디오를 받을 수 있도록 수신 전용 트랜시버 추가
            pc.addTransceiver("audio", direction="recvonly")

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            """연결 상태 변경 시 호출되는 이벤트 핸들러.

            교체된(이전) RTCPeerConnection의 이벤트는 무시합니다.
            """
            if link.pc is not pc or link.is_closed:
                return
            logger.info(f"[WebRTC] 피어 {member_id[:8]} 연결 상태: {pc.connectionState}")
            if pc.connectionState == "connected":
                self._check_connected(link)
            elif pc.connectionState == "failed":
                self._schedule_failure(link)

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            """원격 오디오 트랙 수신 시 볼륨 트랙으로 감싸 이벤트를 냅니다."""
            if link.pc is not pc or track.kind != "audio":
                return
            playback = VolumeTrack(track, gain=self._voice_state.volume / 100.0)
            link.receivers.append(playback)
            logger.info(f"[WebRTC] 피어 {member_id[:8]} 오디오 트랙 수신")
            self.emit(OrchestratorEvent.REMOTE_TRACK, RemoteTrack(member_id=member_id, track=playback))

        @pc.on("icecandidate")
        def on_ice_candidate(candidate):
            # aiortc는 SDP에 후보를 포함하므로 보통 호출되지 않음
            if link.pc is not pc or candidate is None:
                return
            self.emit(OrchestratorEvent.LOCAL_CANDIDATE, LocalCandidate(
                member_id=member_id,
                candidate={
                    "candidate": f"candidate:{candidate.to_sdp()}" if hasattr(candidate, "to_sdp") else str(candidate),
                    "sdpMid": candidate.sdpMid,
                    "sdpMLineIndex": candidate.sdpMLineIndex,
                },
            ))

    def _transition(self, link: NegotiationLink, state: LinkState, role: Optional[NegotiationRole] = None) -> None:
        previous = link.state
        if link.transition(state, role) and previous != state:
            self.emit(OrchestratorEvent.LINK_STATE, LinkStateChanged(
                member_id=link.remote_member_id, state=state, previous=previous
            ))

    def _check_connected(self, link: NegotiationLink) -> None:
        """로컬/원격 SDP가 모두 설정되고 트랜스포트가 연결되면 connected로 전이합니다.

        재시작으로 복구된 링크는 재시작 횟수를 초기화하므로, 이후의 별개 장애에도
        다시 한 번 자동 재시작을 시도합니다.
        """
        if (
            link.local_description is not None
            and link.remote_description is not None
            and link.pc.connectionState == "connected"
            and link.state == LinkState.NEGOTIATING
        ):
            self._transition(link, LinkState.CONNECTED)
            if link.restart_attempts:
                logger.info(f"[WebRTC] 피어 {link.remote_member_id[:8]} ICE 재시작 후 복구")
                link.restart_attempts = 0

    async def _rebuild_session(self, link: NegotiationLink) -> None:
        old_pc = link.pc
        self._attach_peer_connection(link)
        await old_pc.close()

    async def make_offer(self, remote_member_id: str, ice_restart: bool = False) -> dict:
        """offer를 생성하고 로컬 SDP로 설정합니다.

        Args:
            remote_member_id: 원격 멤버 ID
            ice_restart: True면 새 RTCPeerConnection으로 세션을 다시 만들고
                offer에 "ice_restart" 플래그를 붙임

        Raises:
            UnknownPeer: 링크가 없음
        """
        link = self._require_link(remote_member_id)
        if ice_restart:
            await self._rebuild_session(link)

        self._transition(link, LinkState.NEGOTIATING, NegotiationRole.OFFER_SENT)
        pc = link.pc
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        if link.pc is not pc:
            raise UnknownPeer(remote_member_id)

        description = description_to_dict(pc.localDescription)
        link.local_description = description
        logger.info(f"[WebRTC] offer 생성: {remote_member_id[:8]}{' (ICE 재시작)' if ice_restart else ''}")

        if ice_restart:
            return {**description, "ice_restart": True}
        return description

    async def make_answer(self, remote_member_id: str, remote_offer: dict) -> Optional[dict]:
        """원격 offer를 적용하고 answer를 생성합니다.

        글레어: 로컬 offer가 대기 중일 때 원격 offer가 오면 멤버 ID가 작은 쪽의
        offer가 우선합니다. 로컬이 이기면 원격 offer를 무시하고 None을 반환하며,
        지면 대기 중인 로컬 offer를 버리고(세션 재생성) answer를 만듭니다.

        Raises:
            UnknownPeer: 링크가 없음
        """
        link = self._require_link(remote_member_id)

        if link.has_offer_pending:
            if self.local_member_id is not None and self.local_member_id < remote_member_id:
                logger.info(f"[WebRTC] 글레어: 로컬 offer 우선, {remote_member_id[:8]}의 offer 무시")
                return None
            logger.info(f"[WebRTC] 글레어: {remote_member_id[:8]}의 offer 우선, 로컬 offer 폐기")
            await self._rebuild_session(link)
        elif remote_offer.get("ice_restart") and link.remote_description is not None:
            logger.info(f"[WebRTC] 피어 {remote_member_id[:8]} ICE 재시작 offer 수신")
            await self._rebuild_session(link)

        self._transition(link, LinkState.NEGOTIATING, NegotiationRole.ANSWER_SENT)
        pc = link.pc
        await pc.setRemoteDescription(
            RTCSessionDescription(sdp=remote_offer["sdp"], type=remote_offer.get("type", "offer"))
        )
        if link.pc is not pc:
            raise UnknownPeer(remote_member_id)
        link.remote_description = {"sdp": remote_offer["sdp"], "type": remote_offer.get("type", "offer")}
        await self._flush_candidates(link)

        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        description = description_to_dict(pc.localDescription)
        link.local_description = description
        logger.info(f"[WebRTC] answer 생성: {remote_member_id[:8]}")

        self._check_connected(link)
        return description

    async def apply_remote_answer(self, remote_member_id: str, description: dict) -> bool:
        """원격 answer를 적용합니다.

        대기 중인 로컬 offer가 없으면(글레어 후 등) 무시하고 False를 반환합니다.

        Raises:
            UnknownPeer: 링크가 없음
        """
        link = self._require_link(remote_member_id)
        if not link.has_offer_pending:
            logger.warning(f"[WebRTC] 피어 {remote_member_id[:8]} 대기 중인 offer 없음, answer 무시")
            return False

        pc = link.pc
        await pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description.get("type", "answer"))
        )
        if link.pc is not pc:
            raise UnknownPeer(remote_member_id)
        link.remote_description = {"sdp": description["sdp"], "type": description.get("type", "answer")}
        await self._flush_candidates(link)

        logger.info(f"[WebRTC] answer 적용: {remote_member_id[:8]}")
        self._check_connected(link)
        return True

    async def enqueue_remote_candidate(self, remote_member_id: str, candidate: dict) -> bool:
        """원격 ICE candidate를 적용합니다.

        원격 SDP가 아직 없거나 큐를 비우는 중이면 도착 순서대로 큐에 보관합니다.

        Returns:
            bool: 즉시 적용했으면 True, 큐에 보관했으면 False

        Raises:
            UnknownPeer: 링크가 없음
        """
        link = self._require_link(remote_member_id)
        if link.remote_description is None or link.flushing or link.pending_candidates:
            link.pending_candidates.append(candidate)
            logger.debug(
                f"[WebRTC] 피어 {remote_member_id[:8]} candidate 큐잉 ({len(link.pending_candidates)}개 대기)"
            )
            if link.remote_description is not None and not link.flushing:
                await self._flush_candidates(link)
            return False

        await self._add_candidate(link, candidate)
        return True

    async def _flush_candidates(self, link: NegotiationLink) -> None:
        """대기 중인 candidate를 도착 순서대로 적용합니다."""
        if link.flushing:
            return
        link.flushing = True
        pc = link.pc
        flushed = 0
        try:
            while link.pending_candidates and link.pc is pc:
                candidate = link.pending_candidates.popleft()
                await self._add_candidate(link, candidate)
                flushed += 1
        finally:
            link.flushing = False
        if flushed:
            logger.info(f"[WebRTC] 피어 {link.remote_member_id[:8]} 대기 candidate {flushed}개 적용")

    async def _add_candidate(self, link: NegotiationLink, candidate: dict) -> None:
        try:
            ice_candidate = parse_candidate(candidate)
            if ice_candidate is None:
                return
            await link.pc.addIceCandidate(ice_candidate)
        except Exception as e:
            logger.error(f"[WebRTC] 피어 {link.remote_member_id[:8]} ICE candidate 추가 실패: {e}")

    # ------------------------------------------------------------------
    # 실패 처리 / ICE 재시작
    # ------------------------------------------------------------------

    def _schedule_failure(self, link: NegotiationLink) -> None:
        member_id = link.remote_member_id
        task = self._failure_tasks.get(member_id)
        if task is not None and not task.done():
            return
        self._failure_tasks[member_id] = asyncio.create_task(self.handle_connection_failure(member_id))

    async def handle_connection_failure(self, remote_member_id: str) -> Optional[dict]:
        """연결 실패를 처리합니다.

        재시작 횟수가 남아 있으면 새 offer로 ICE 재시작을 시도하고 restart_offer
        이벤트를 냅니다. 남아 있지 않으면 failed 상태로 두고 peer_disconnected를 냅니다.

        Returns:
            Optional[dict]: 재시작 offer (재시작하지 않으면 None)
        """
        link = self.links.get(remote_member_id)
        if link is None or link.is_closed:
            return None

        self._transition(link, LinkState.FAILED)

        if link.restart_attempts >= self.max_ice_restarts:
            logger.error(f"[WebRTC] 피어 {remote_member_id[:8]} 재시작 후에도 연결 실패, 포기")
            self.emit(OrchestratorEvent.PEER_DISCONNECTED, PeerDisconnected(
                member_id=remote_member_id, reason="ice_failed"
            ))
            return None

        link.restart_attempts += 1
        logger.warning(
            f"[WebRTC] 피어 {remote_member_id[:8]} 연결 실패, ICE 재시작 "
            f"({link.restart_attempts}/{self.max_ice_restarts})"
        )
        try:
            description = await self.make_offer(remote_member_id, ice_restart=True)
        except UnknownPeer:
            return None
        self.emit(OrchestratorEvent.RESTART_OFFER, RestartOffer(member_id=remote_member_id, description=description))
        return description

    # ------------------------------------------------------------------
    # 조회 / 종료
    # ------------------------------------------------------------------

    def get_connection_states(self) -> Dict[str, str]:
        """원격 멤버별 링크 상태를 반환합니다."""
        return {member_id: link.state.value for member_id, link in self.links.items()}

    async def close_link(self, remote_member_id: str) -> None:
        """링크를 종료하고 관련 리소스를 정리합니다. 없는 링크여도 안전합니다."""
        link = self.links.pop(remote_member_id, None)
        if link is None:
            return

        task = self._failure_tasks.pop(remote_member_id, None)
        if task is not None and not task.done():
            task.cancel()

        self._transition(link, LinkState.CLOSED)
        link.pending_candidates.clear()
        for receiver in link.receivers:
            receiver.stop()
        for sender in link.senders:
            if sender.track is not None:
                sender.track.stop()
        await link.pc.close()
        logger.info(f"[WebRTC] 링크 종료: {remote_member_id[:8]} (남은 {len(self.links)}개)")

    async def close_all(self) -> None:
        """모든 링크를 종료하고 마이크를 해제합니다."""
        for member_id in list(self.links.keys()):
            await self.close_link(member_id)

        # 진행 중인 캡처 열기는 완료 직후 해제됨
        self._capture_epoch += 1

        for task in (self._meter_task, self._meter_consumer):
            if task is not None and not task.done():
                task.cancel()
        self._meter_task = None
        self._meter_consumer = None

        if self._local_track is not None:
            self._local_track.stop()
            self._local_track = None
        if self._capture is not None:
            self._capture.stop()
            self._capture = None

        self._meter.reset()
        self._voice_state.capturing = False
        self._voice_state.audio_level = 0
        logger.info("[WebRTC] 모든 링크 종료 및 마이크 해제")
