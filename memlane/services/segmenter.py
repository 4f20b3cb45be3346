"""Cuts a live audio stream into bounded segments on a fixed boundary timer.

A new segment starts buffering the moment the previous one is sealed, so no
audio between boundaries is lost; sealed segments are handed off as WAV bytes
together with an explicit sequence index.
"""

import asyncio
import io
import logging
import threading
import wave
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from memlane.errors import SessionStateError

from .audio_source import AudioSource
from .formatting import format_marker

logger = logging.getLogger(__name__)

DEFAULT_SEGMENT_SECONDS = 30.0


@dataclass(frozen=True)
class AudioSegment:
    """One sealed slice of audio."""

    index: int
    audio: bytes  # WAV container, PCM16 mono
    sealed_at: datetime
    is_final: bool
    frames: int

    @property
    def marker(self) -> str:
        return format_marker(self.sealed_at)


def encode_wav(pcm: bytes, sample_rate: int) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)  # int16
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return buf.getvalue()


class AudioSegmenter:
    """Buffers frames from an AudioSource and seals a segment every *interval_secs*.

    Usage::

        segmenter = AudioSegmenter(source, on_segment=dispatch, interval_secs=30)
        await segmenter.start()
        ...
        await segmenter.stop()   # seals the final (partial) segment exactly once
    """

    def __init__(
        self,
        source: AudioSource,
        on_segment: Callable[[AudioSegment], None],
        interval_secs: float = DEFAULT_SEGMENT_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._source = source
        self._on_segment = on_segment
        self._interval = interval_secs
        self._clock = clock
        # Frames may arrive on a PortAudio thread
        self._lock = threading.Lock()
        self._buffer = bytearray()
        self._next_index = 0
        self._timer: asyncio.Task | None = None
        self._started = False
        self._stop_requested = False

    @property
    def segments_sealed(self) -> int:
        return self._next_index

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    async def start(self) -> None:
        """Open the source and arm the boundary timer. Raises DeviceUnavailable."""
        if self._started:
            raise SessionStateError("Segmenter already started")
        self._source.open(self._on_frames)
        self._started = True
        self._timer = asyncio.create_task(self._boundary_loop())
        logger.info(f"[SEGMENT] Capture started, sealing every {self._interval:.0f}s")

    def _on_frames(self, data: bytes) -> None:
        with self._lock:
            if self._stop_requested:
                return
            self._buffer.extend(data)

    async def _boundary_loop(self) -> None:
        while not self._stop_requested:
            await asyncio.sleep(self._interval)
            if self._stop_requested:
                break
            self._seal(is_final=False)

    def _seal(self, is_final: bool) -> AudioSegment:
        with self._lock:
            pcm = bytes(self._buffer)
            self._buffer.clear()
            index = self._next_index
            self._next_index += 1

        segment = AudioSegment(
            index=index,
            audio=encode_wav(pcm, self._source.sample_rate),
            sealed_at=self._clock(),
            is_final=is_final,
            frames=len(pcm) // 2,
        )
        logger.info(f"[SEGMENT] Sealed #{index} ({segment.frames} frames, final={is_final})")
        self._on_segment(segment)
        return segment

    async def stop(self) -> AudioSegment | None:
        """Cancel the timer, seal the last segment and release the input.

        Returns the final segment, or None when stop was already requested.
        """
        if not self._started or self._stop_requested:
            return None
        self._stop_requested = True

        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        try:
            return self._seal(is_final=True)
        finally:
            self._source.close()
