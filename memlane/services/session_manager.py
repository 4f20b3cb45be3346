"""Capture session lifecycle: Recording -> Stopping -> Finalizing -> Done.

A CaptureSession owns one audio source, its segmenter and its transcript
accumulator. Transcription runs as one task per sealed segment so segment N can
still be in flight while N+1 is captured. The SessionManager keeps at most one
active session per user.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Callable

from memlane.errors import DeviceUnavailable, SessionStateError, TranscriptionError, TranscriptionTimeout

from .accumulator import SegmentEntry, SegmentStatus, TranscriptAccumulator, TranscriptSnapshot
from .ai_providers import TranscriptionService
from .audio_source import AudioSource, PushAudioSource
from .finalizer import FinalizedSession, FinalizeRequest, SessionFinalizer
from .segmenter import DEFAULT_SEGMENT_SECONDS, AudioSegment, AudioSegmenter

logger = logging.getLogger(__name__)

EventSink = Callable[[str, str, dict], None]  # (user_id, event, data)

# Slack on top of the worst-case transcription time for the final segment
BARRIER_GRACE_SECS = 5.0


class SessionState(str, Enum):
    RECORDING = "recording"
    STOPPING = "stopping"
    FINALIZING = "finalizing"
    DONE = "done"


_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.RECORDING: {SessionState.STOPPING},
    SessionState.STOPPING: {SessionState.FINALIZING},
    SessionState.FINALIZING: {SessionState.DONE},
    SessionState.DONE: set(),
}


class CaptureSession:
    """One recording, from opening the input to the stored summary."""

    def __init__(
        self,
        *,
        user_id: str,
        source: AudioSource,
        transcriber: TranscriptionService,
        finalizer: SessionFinalizer,
        title: str = "",
        notes: str = "",
        is_private: bool = False,
        segment_seconds: float = DEFAULT_SEGMENT_SECONDS,
        transcription_timeout: float = 45.0,
        transcription_retries: int = 1,
        emit: EventSink | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.id = str(uuid.uuid4())
        self.user_id = user_id
        self.source = source
        self.title = title
        self.notes = notes
        self.is_private = is_private
        self.started_at = clock()
        self.state = SessionState.RECORDING
        self.result: FinalizedSession | None = None

        self._transcriber = transcriber
        self._finalizer = finalizer
        self._timeout = transcription_timeout
        self._retries = max(0, transcription_retries)
        self._emit_event = emit
        self._accumulator = TranscriptAccumulator()
        self._segmenter = AudioSegmenter(
            source, self._dispatch_segment, interval_secs=segment_seconds, clock=clock
        )
        self._tasks: set[asyncio.Task] = set()
        self._stop_task: asyncio.Task | None = None

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.RECORDING

    @property
    def barrier_timeout(self) -> float:
        """Longest time the final segment can legitimately take, retries included."""
        return self._timeout * (self._retries + 1) + BARRIER_GRACE_SECS

    async def start(self) -> None:
        """Open the input and start sealing segments. Raises DeviceUnavailable."""
        await self._segmenter.start()
        logger.info(
            f"[SESSION] Started {self.id} for {self.user_id} "
            f"(private={self.is_private}, title='{self.title}')"
        )
        self._emit("session_started", {"title": self.title, "is_private": self.is_private})

    def update_details(self, title: str | None = None, notes: str | None = None) -> None:
        """Change title or notes; allowed until the transcript is handed to finalization."""
        if self.state not in (SessionState.RECORDING, SessionState.STOPPING):
            raise SessionStateError(f"Session {self.id} is {self.state.value}, details are final")
        if title is not None:
            self.title = title
        if notes is not None:
            self.notes = notes

    def snapshot(self) -> TranscriptSnapshot:
        return self._accumulator.snapshot()

    @property
    def entries(self) -> tuple[SegmentEntry, ...]:
        return self._accumulator.entries

    async def stop(self) -> FinalizedSession:
        """Stop capture and finalize. Every call after the first awaits the same outcome."""
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._run_stop())
        return await asyncio.shield(self._stop_task)

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise SessionStateError(f"Session {self.id} cannot go from {self.state.value} to {new_state.value}")
        logger.info(f"[SESSION] {self.id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self._emit("state", {"state": new_state.value})

    async def _run_stop(self) -> FinalizedSession:
        self._transition(SessionState.STOPPING)

        final_segment = await self._segmenter.stop()
        self._accumulator.mark_stopped()
        if final_segment is not None:
            try:
                await self._accumulator.wait_complete(timeout=self.barrier_timeout)
            except asyncio.TimeoutError:
                logger.error(
                    f"[SESSION] {self.id}: final segment not applied after {self.barrier_timeout:.0f}s, "
                    f"finalizing with {len(self._accumulator.entries)} segments"
                )

        self._transition(SessionState.FINALIZING)
        snapshot = self._accumulator.snapshot()
        self._accumulator.close()

        request = FinalizeRequest(
            session_id=self.id,
            user_id=self.user_id,
            is_private=self.is_private,
            started_at=self.started_at,
            duration_seconds=snapshot.elapsed_seconds,
            text=snapshot.text,
            has_speech=snapshot.has_text,
            title=self.title,
            notes=self.notes,
        )
        try:
            result = await self._finalizer.finalize(request)
        except Exception as e:
            logger.error(f"[SESSION] Finalizing {self.id} crashed: {e!r}")
            result = FinalizedSession.unsaved(request)
        self.result = result
        self._transition(SessionState.DONE)
        self._emit(
            "session_done",
            {
                "transcript_id": result.transcript_id,
                "local_id": result.local_id,
                "summary_title": result.summary_title,
                "summary_failed": result.summary_failed,
            },
        )
        return result

    def _dispatch_segment(self, segment: AudioSegment) -> None:
        task = asyncio.create_task(self._transcribe(segment))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _transcribe(self, segment: AudioSegment) -> None:
        text, status = "", SegmentStatus.FAILED
        try:
            text, status = await self._transcribe_with_retries(segment)
        except Exception as e:
            logger.error(f"[SEGMENT] #{segment.index} transcription crashed: {e}")
        finally:
            self._apply(segment, text, status)

    async def _transcribe_with_retries(self, segment: AudioSegment) -> tuple[str, SegmentStatus]:
        if segment.frames == 0:
            return "", SegmentStatus.EMPTY

        for attempt in range(1, self._retries + 2):
            try:
                text = await asyncio.wait_for(
                    self._transcriber.transcribe(segment.audio, filename=f"segment-{segment.index}.wav"),
                    timeout=self._timeout,
                )
            except (asyncio.TimeoutError, TranscriptionTimeout):
                logger.warning(f"[SEGMENT] #{segment.index} timed out after {self._timeout:.0f}s")
                return "", SegmentStatus.TIMEOUT
            except TranscriptionError as e:
                logger.warning(f"[SEGMENT] #{segment.index} attempt {attempt} failed: {e}")
                continue
            text = text.strip()
            return text, SegmentStatus.OK if text else SegmentStatus.EMPTY

        return "", SegmentStatus.FAILED

    def _apply(self, segment: AudioSegment, text: str, status: SegmentStatus) -> None:
        try:
            applied = self._accumulator.append(
                segment.index, text, segment.is_final, marker=segment.marker, status=status
            )
        except SessionStateError as e:
            logger.warning(f"[SEGMENT] Result dropped: {e}")
            return
        for entry in applied:
            self._emit(
                "segment",
                {
                    "index": entry.index,
                    "marker": entry.marker,
                    "text": entry.text,
                    "status": entry.status.value,
                    "is_final": entry.is_final,
                },
            )

    def _emit(self, event: str, data: dict) -> None:
        if self._emit_event is not None:
            self._emit_event(self.user_id, event, {"session_id": self.id, **data})


class SessionManager:
    """Keeps a single active capture session per user."""

    def __init__(
        self,
        transcriber: TranscriptionService,
        finalizer: SessionFinalizer,
        *,
        segment_seconds: float = DEFAULT_SEGMENT_SECONDS,
        sample_rate: int = 16000,
        transcription_timeout: float = 45.0,
        transcription_retries: int = 1,
        emit: EventSink | None = None,
        microphone_factory: Callable[[], AudioSource] | None = None,
    ):
        self.transcriber = transcriber
        self.finalizer = finalizer
        self.segment_seconds = segment_seconds
        self.sample_rate = sample_rate
        self.transcription_timeout = transcription_timeout
        self.transcription_retries = transcription_retries
        self.emit = emit
        self.microphone_factory = microphone_factory
        self._sessions: dict[str, CaptureSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    def current(self, user_id: str) -> CaptureSession | None:
        return self._sessions.get(user_id)

    def active(self, user_id: str) -> CaptureSession:
        session = self._sessions.get(user_id)
        if session is None or not session.is_active:
            raise SessionStateError("No active session")
        return session

    async def start_session(
        self,
        user_id: str,
        *,
        title: str = "",
        notes: str = "",
        is_private: bool = False,
        source: str = "stream",
    ) -> CaptureSession:
        """Start a new recording, stopping the user's previous one first."""
        async with self._lock(user_id):
            previous = self._sessions.get(user_id)
            if previous is not None and previous.state != SessionState.DONE:
                logger.warning(f"Session already active for {user_id}, stopping previous session first")
                try:
                    await previous.stop()
                except Exception as e:
                    logger.error(f"[SESSION] Previous session {previous.id} ended with an error: {e}")

            session = CaptureSession(
                user_id=user_id,
                source=self._make_source(source),
                transcriber=self.transcriber,
                finalizer=self.finalizer,
                title=title,
                notes=notes,
                is_private=is_private,
                segment_seconds=self.segment_seconds,
                transcription_timeout=self.transcription_timeout,
                transcription_retries=self.transcription_retries,
                emit=self.emit,
            )
            await session.start()
            self._sessions[user_id] = session
            return session

    def _make_source(self, kind: str) -> AudioSource:
        if kind == "microphone":
            if self.microphone_factory is None:
                raise DeviceUnavailable("No local microphone configured")
            return self.microphone_factory()
        return PushAudioSource(sample_rate=self.sample_rate)

    async def stop_session(self, user_id: str) -> FinalizedSession:
        session = self._sessions.get(user_id)
        if session is None:
            raise SessionStateError("No session to stop")
        return await session.stop()

    def feed_audio(self, user_id: str, data: bytes) -> bool:
        """Push PCM frames into the user's streaming session. False when nothing is recording."""
        session = self._sessions.get(user_id)
        if session is None or not session.is_active or not isinstance(session.source, PushAudioSource):
            return False
        return session.source.feed(data)

    async def shutdown(self) -> None:
        """Stop every unfinished session so its transcript is not lost."""
        for user_id, session in list(self._sessions.items()):
            if session.state == SessionState.DONE:
                continue
            try:
                await session.stop()
            except Exception as e:
                logger.error(f"[SESSION] Could not finalize {session.id} for {user_id} on shutdown: {e}")
        self._sessions.clear()
