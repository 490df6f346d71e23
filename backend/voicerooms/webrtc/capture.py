"""마이크 캡처 모듈.

aiortc MediaPlayer로 로컬 입력 장치를 열고 오디오 트랙을 제공합니다.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av.error import FFmpegError

from .config import media_config
from ..shared.errors import DeviceError, PermissionDenied

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureConstraints:
    """마이크 캡처 조건.

    Attributes:
        device_id: ffmpeg 입력 장치 이름 (None이면 기본 장치)
        format: ffmpeg 입력 포맷 (None이면 플랫폼 기본값)
        sample_rate: 샘플레이트 (Hz)
        channels: 채널 수
    """
    device_id: Optional[str] = None
    format: Optional[str] = None
    sample_rate: int = media_config.AUDIO_SAMPLE_RATE
    channels: int = media_config.AUDIO_CHANNELS

    def with_device(self, device_id: str) -> "CaptureConstraints":
        return replace(self, device_id=device_id)

    def player_options(self) -> dict:
        return {
            "sample_rate": str(self.sample_rate),
            "channels": str(self.channels),
        }


@dataclass
class MediaHandle:
    """열린 캡처 장치 핸들."""
    track: MediaStreamTrack
    constraints: CaptureConstraints
    player: Optional[MediaPlayer] = None

    @property
    def device_id(self) -> Optional[str]:
        return self.constraints.device_id

    def stop(self) -> None:
        """장치를 해제합니다. 여러 번 호출해도 안전합니다."""
        if self.track.readyState != "ended":
            self.track.stop()


async def open_microphone(constraints: Optional[CaptureConstraints] = None) -> MediaHandle:
    """로컬 마이크를 엽니다.

    MediaPlayer 생성은 장치를 동기적으로 열기 때문에 executor에서 실행합니다.

    Raises:
        PermissionDenied: 장치 접근 권한이 거부됨
        DeviceError: 장치를 찾을 수 없거나 오디오 스트림이 없음
    """
    constraints = constraints or CaptureConstraints()
    device = constraints.device_id or media_config.CAPTURE_DEVICE
    fmt = constraints.format or media_config.CAPTURE_FORMAT

    logger.info(f"[WebRTC] 마이크 열기: device={device}, format={fmt}")
    loop = asyncio.get_running_loop()
    try:
        player = await loop.run_in_executor(
            None,
            lambda: MediaPlayer(device, format=fmt, options=constraints.player_options()),
        )
    except PermissionError as e:
        raise PermissionDenied(f"Microphone access denied: {e}")
    except (FFmpegError, OSError) as e:
        raise DeviceError(f"Cannot open input device '{device}': {e}")

    if player.audio is None:
        raise DeviceError(f"Input device '{device}' has no audio stream")

    return MediaHandle(track=player.audio, constraints=constraints, player=player)
