"""WebRTC 모듈.

클라이언트 측 P2P 오디오 연결 관리를 제공합니다.

Classes:
    PeerConnectionOrchestrator: 원격 멤버별 협상 링크 관리
    NegotiationLink: 링크 상태 머신
    LocalAudioTrack / VolumeTrack: 음소거/볼륨 트랙

Config:
    ice_config: ICE 서버 설정
    media_config: 캡처/미터 설정
    client_config: 시그널링 클라이언트 설정
"""

from .config import (
    ICEServerConfig,
    MediaConfig,
    ClientConfig,
    ice_config,
    media_config,
    client_config,
    build_rtc_configuration,
)
from .capture import CaptureConstraints, MediaHandle, open_microphone
from .events import (
    OrchestratorEvent,
    LinkStateChanged,
    LocalCandidate,
    RestartOffer,
    RemoteTrack,
    PeerDisconnected,
    LevelSample,
)
from .link import LinkState, NegotiationRole, NegotiationLink
from .orchestrator import PeerConnectionOrchestrator, LocalVoiceState, parse_candidate
from .tracks import LocalAudioTrack, VolumeTrack, LevelMeter, compute_level

__all__ = [
    # Orchestrator
    "PeerConnectionOrchestrator",
    "LocalVoiceState",
    "parse_candidate",
    # Link
    "LinkState",
    "NegotiationRole",
    "NegotiationLink",
    # Events
    "OrchestratorEvent",
    "LinkStateChanged",
    "LocalCandidate",
    "RestartOffer",
    "RemoteTrack",
    "PeerDisconnected",
    "LevelSample",
    # Media
    "CaptureConstraints",
    "MediaHandle",
    "open_microphone",
    "LocalAudioTrack",
    "VolumeTrack",
    "LevelMeter",
    "compute_level",
    # Config
    "ICEServerConfig",
    "MediaConfig",
    "ClientConfig",
    "ice_config",
    "media_config",
    "client_config",
    "build_rtc_configuration",
]
