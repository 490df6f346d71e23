"""오디오 트랙 모듈.

로컬 마이크 트랙의 음소거 게이트, 원격 트랙의 볼륨 조절, 오디오 레벨 계산을 제공합니다.
"""

import logging
import math
from typing import Optional

import numpy as np
from av import AudioFrame
from aiortc import MediaStreamTrack

logger = logging.getLogger(__name__)


def _normalized_samples(frame: AudioFrame) -> np.ndarray:
    samples = frame.to_ndarray()
    if np.issubdtype(samples.dtype, np.integer):
        return samples.astype(np.float32) / float(np.iinfo(samples.dtype).max)
    return samples.astype(np.float32)


def compute_level(frame: AudioFrame, floor_db: float = -60.0) -> int:
    """오디오 프레임의 RMS 레벨을 0..100으로 환산합니다.

    floor_db(dBFS) 이하는 0, 0 dBFS는 100.
    """
    samples = _normalized_samples(frame)
    if samples.size == 0:
        return 0
    rms = float(np.sqrt(np.mean(np.square(samples))))
    if rms <= 0.0:
        return 0
    db = 20.0 * math.log10(rms)
    level = (db - floor_db) / -floor_db * 100.0
    return int(round(min(100.0, max(0.0, level))))


def _rebuild_frame(frame: AudioFrame, samples: np.ndarray) -> AudioFrame:
    new_frame = AudioFrame.from_ndarray(samples, format=frame.format.name, layout=frame.layout.name)
    new_frame.sample_rate = frame.sample_rate
    new_frame.pts = frame.pts
    new_frame.time_base = frame.time_base
    return new_frame


def silence_like(frame: AudioFrame) -> AudioFrame:
    """같은 포맷/길이의 무음 프레임을 만듭니다."""
    return _rebuild_frame(frame, np.zeros_like(frame.to_ndarray()))


def scale_frame(frame: AudioFrame, gain: float) -> AudioFrame:
    """프레임에 gain(0..1)을 적용합니다."""
    samples = frame.to_ndarray()
    if np.issubdtype(samples.dtype, np.integer):
        info = np.iinfo(samples.dtype)
        scaled = np.clip(samples.astype(np.float32) * gain, info.min, info.max).astype(samples.dtype)
    else:
        scaled = (samples * gain).astype(samples.dtype)
    return _rebuild_frame(frame, scaled)


class LocalAudioTrack(MediaStreamTrack):
    """마이크 트랙을 감싸 음소거를 재협상 없이 적용하는 트랙.

    `enabled`가 False이면 원본 프레임 대신 같은 길이의 무음 프레임을 내보냅니다.
    모든 링크의 송신 트랙은 MediaRelay를 통해 이 트랙을 구독합니다.

    Attributes:
        kind (str): 트랙 종류 ("audio")
        source (MediaStreamTrack): 원본 마이크 트랙
        enabled (bool): 송출 여부
    """
    kind = "audio"

    def __init__(self, source: MediaStreamTrack, enabled: bool = True):
        super().__init__()
        self.source = source
        self.enabled = enabled

    async def recv(self):
        frame = await self.source.recv()
        if not self.enabled:
            return silence_like(frame)
        return frame

    def stop(self):
        super().stop()
        self.source.stop()


class VolumeTrack(MediaStreamTrack):
    """원격 오디오 트랙에 재생 볼륨을 적용하는 트랙.

    Attributes:
        track (MediaStreamTrack): 원격 피어로부터 수신한 원본 트랙
        gain (float): 0.0..1.0
    """
    kind = "audio"

    def __init__(self, track: MediaStreamTrack, gain: float = 1.0):
        super().__init__()
        self.track = track
        self.gain = gain

    async def recv(self):
        frame = await self.track.recv()
        if self.gain >= 1.0:
            return frame
        return scale_frame(frame, max(0.0, self.gain))

    def stop(self):
        super().stop()
        self.track.stop()


class LevelMeter:
    """최근 프레임 레벨을 보관하는 간단한 미터."""

    def __init__(self, floor_db: float = -60.0):
        self.floor_db = floor_db
        self.level = 0
        self.frames = 0

    def feed(self, frame: Optional[AudioFrame]) -> int:
        self.level = compute_level(frame, self.floor_db) if frame is not None else 0
        self.frames += 1
        return self.level

    def reset(self) -> None:
        self.level = 0
