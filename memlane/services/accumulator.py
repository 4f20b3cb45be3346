"""Ordered, append-only transcript buffer for one capture session.

Transcription responses can come back in any order; entries are applied strictly
by segment index. Results that arrive early wait in a pending map until every
earlier index has been applied.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from memlane.errors import SessionStateError

from .formatting import SEGMENT_DIVIDER

logger = logging.getLogger(__name__)


class SegmentStatus(str, Enum):
    OK = "ok"
    EMPTY = "empty"  # transcribed successfully, nothing was said
    FAILED = "failed"  # adapter error after retries
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class SegmentEntry:
    index: int
    marker: str
    text: str
    is_final: bool
    status: SegmentStatus = SegmentStatus.OK

    def render(self) -> str:
        body = f"{self.marker}\n{self.text}"
        if self.is_final:
            return body
        return f"{body}\n{SEGMENT_DIVIDER}\n"


@dataclass(frozen=True)
class TranscriptSnapshot:
    text: str
    elapsed_seconds: float
    segments: int
    failed_segments: int
    complete: bool
    has_text: bool = False  # at least one segment produced words


class TranscriptAccumulator:
    """Applies segment results in sequence order and tracks elapsed recording time.

    All methods run on the event loop and never await, so an append can't
    interleave with another append or with a snapshot.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started = clock()
        self._stopped_at: float | None = None
        self._entries: list[SegmentEntry] = []
        self._pending: dict[int, SegmentEntry] = {}
        self._next_index = 0
        self._final_index: int | None = None
        self._complete = asyncio.Event()
        self._closed = False

    def append(
        self,
        segment_index: int,
        text: str,
        is_final: bool,
        *,
        marker: str,
        status: SegmentStatus = SegmentStatus.OK,
    ) -> list[SegmentEntry]:
        """Record one segment's result. Returns the entries that became visible."""
        if self._closed:
            raise SessionStateError(f"Transcript is closed, segment #{segment_index} arrived too late")
        if segment_index < self._next_index or segment_index in self._pending:
            logger.warning(f"[SEGMENT] Duplicate result for #{segment_index} ignored")
            return []
        if self._final_index is not None and segment_index > self._final_index:
            raise SessionStateError(f"Segment #{segment_index} follows the final segment #{self._final_index}")

        if is_final:
            self._final_index = segment_index
        self._pending[segment_index] = SegmentEntry(
            index=segment_index,
            marker=marker,
            text=text,
            is_final=is_final,
            status=status,
        )

        applied: list[SegmentEntry] = []
        while self._next_index in self._pending:
            entry = self._pending.pop(self._next_index)
            self._entries.append(entry)
            applied.append(entry)
            self._next_index += 1

        if self._pending:
            logger.debug(f"[SEGMENT] Holding {sorted(self._pending)} until #{self._next_index} arrives")
        if self._final_index is not None and self._next_index > self._final_index:
            self._complete.set()
        return applied

    def mark_stopped(self) -> None:
        """Freeze the elapsed-time counter."""
        if self._stopped_at is None:
            self._stopped_at = self._clock()

    def close(self) -> None:
        """Reject any further appends."""
        self._closed = True

    @property
    def is_complete(self) -> bool:
        return self._complete.is_set()

    @property
    def elapsed_seconds(self) -> float:
        end = self._stopped_at if self._stopped_at is not None else self._clock()
        return max(0.0, end - self._started)

    @property
    def entries(self) -> tuple[SegmentEntry, ...]:
        return tuple(self._entries)

    def snapshot(self) -> TranscriptSnapshot:
        return TranscriptSnapshot(
            text="".join(entry.render() for entry in self._entries),
            elapsed_seconds=self.elapsed_seconds,
            segments=len(self._entries),
            failed_segments=sum(
                1 for e in self._entries if e.status in (SegmentStatus.FAILED, SegmentStatus.TIMEOUT)
            ),
            complete=self.is_complete,
            has_text=any(e.text.strip() for e in self._entries),
        )

    async def wait_complete(self, timeout: float | None = None) -> None:
        """Wait until the final segment and everything before it has been applied."""
        await asyncio.wait_for(self._complete.wait(), timeout=timeout)
