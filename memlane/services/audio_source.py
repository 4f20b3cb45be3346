"""Audio inputs that feed the segmenter with 16-bit mono PCM frames.

Two sources exist: frames pushed by a client over the WebSocket (the browser
case) and a local microphone opened through sounddevice.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable

import numpy as np

from memlane.errors import DeviceUnavailable

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - allow import on systems without PortAudio
    sd = None

logger = logging.getLogger(__name__)

FrameCallback = Callable[[bytes], None]

DEFAULT_BLOCKSIZE = 4096  # frames


def to_pcm16_mono(data: np.ndarray) -> bytes:
    """Convert float32 [-1, 1] buffers of any channel count to mono int16 bytes."""
    data_f32 = data.astype(np.float32, copy=False)
    if data_f32.ndim == 2 and data_f32.shape[1] > 1:
        data_f32 = data_f32.mean(axis=1)
    return np.clip(data_f32.reshape(-1) * 32767.0, -32768, 32767).astype("<i2").tobytes()


class AudioSource(ABC):
    """An exclusively owned input. Opened once per capture session, closed on stop."""

    sample_rate: int

    @abstractmethod
    def open(self, on_frames: FrameCallback) -> None:
        """Start delivering frames; raise DeviceUnavailable if the input cannot be opened."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the input. Safe to call more than once."""
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...


class PushAudioSource(AudioSource):
    """Frames arrive from outside (a WebSocket client) as little-endian PCM16 mono."""

    def __init__(self, sample_rate: int = 16000):
        self.sample_rate = sample_rate
        self._on_frames: FrameCallback | None = None

    @property
    def is_open(self) -> bool:
        return self._on_frames is not None

    def open(self, on_frames: FrameCallback) -> None:
        if self._on_frames is not None:
            raise DeviceUnavailable("Audio source is already in use")
        self._on_frames = on_frames

    def feed(self, data: bytes) -> bool:
        """Hand one chunk of PCM to the segmenter. Returns False once the source is closed."""
        callback = self._on_frames
        if callback is None:
            return False
        if data:
            callback(data)
        return True

    def close(self) -> None:
        self._on_frames = None


class MicrophoneSource(AudioSource):
    """Local input device captured through sounddevice (PortAudio)."""

    def __init__(
        self,
        device: int | str | None = None,
        sample_rate: int = 16000,
        blocksize: int = DEFAULT_BLOCKSIZE,
    ):
        self.device = device
        self.sample_rate = sample_rate
        self.blocksize = blocksize
        self._stream = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def open(self, on_frames: FrameCallback) -> None:
        if sd is None:
            raise DeviceUnavailable("sounddevice not available")
        if self._stream is not None:
            raise DeviceUnavailable("Microphone is already in use")

        def _callback(indata, frames, time, status):  # noqa: ANN001 - external callback signature
            if status:
                logger.debug(f"Input status: {status}")
            on_frames(to_pcm16_mono(indata))

        try:
            stream = sd.InputStream(
                device=self.device,
                channels=1,
                dtype="float32",
                samplerate=self.sample_rate,
                blocksize=self.blocksize,
                callback=_callback,
            )
            stream.start()
        except Exception as e:
            logger.error(f"Could not open microphone {self.device!r}: {e}")
            raise DeviceUnavailable(str(e)) from e

        self._stream = stream
        logger.info(f"Mic capture started (device={self.device!r}, rate={self.sample_rate})")

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
        finally:
            stream.close()
        logger.info("Mic capture stopped")
