"""Turns a stopped session's transcript into stored artifacts, exactly once per session.

Storage and summary failures degrade the outcome instead of losing it: a
transcript that could not be saved is still summarized from the raw text, and a
failed summary leaves the saved transcript in place for a later re-summarize.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from memlane.db.stores import SummaryStore, TranscriptStore
from memlane.errors import PersistenceError, SummarizationError

from .local_store import LocalMemory, LocalMemoryStore
from .summarizer import Summarizer, SummaryRequest, SummaryResult

logger = logging.getLogger(__name__)

PRIVATE_SUFFIX = " (Private)"

Indexer = Callable[[str, str], Awaitable[bool]]


@dataclass
class FinalizeRequest:
    session_id: str
    user_id: str
    is_private: bool
    started_at: datetime
    duration_seconds: float
    text: str
    has_speech: bool = True
    title: str = ""
    notes: str = ""


@dataclass
class FinalizedSession:
    session_id: str
    is_private: bool
    text: str
    duration_seconds: float
    summary_title: str
    summary_text: str
    summary_notes: str = ""
    transcript_id: str | None = None
    local_id: str | None = None
    summary_failed: bool = False

    @classmethod
    def unsaved(cls, request: FinalizeRequest) -> "FinalizedSession":
        """Outcome of a finalization that failed before anything was stored."""
        summary = SummaryResult.placeholder(request.title)
        return cls(
            session_id=request.session_id,
            is_private=request.is_private,
            text=request.text.strip(),
            duration_seconds=request.duration_seconds,
            summary_title=summary.title,
            summary_text=summary.body,
            summary_notes=request.notes.strip(),
            summary_failed=True,
        )


class SessionFinalizer:
    def __init__(
        self,
        transcripts: TranscriptStore,
        summaries: SummaryStore,
        summarizer: Summarizer,
        local_store: LocalMemoryStore,
        indexer: Indexer | None = None,
        on_done: Callable[[str], None] | None = None,
    ):
        self.transcripts = transcripts
        self.summaries = summaries
        self.summarizer = summarizer
        self.local_store = local_store
        self.indexer = indexer
        self.on_done = on_done

    async def finalize(self, request: FinalizeRequest) -> FinalizedSession:
        text = request.text.strip()
        transcript_id: str | None = None

        if text and not request.is_private:
            transcript_id = await self._persist_transcript(request, text)

        if not text or not request.has_speech:
            # Marker-only transcripts are stored but neither summarized nor indexed
            logger.info(f"[SESSION] {request.session_id} has no spoken words")
            summary = SummaryResult.no_content(request.title)
        else:
            summary = await self._summarize_and_index(request, text, transcript_id)

        result = FinalizedSession(
            session_id=request.session_id,
            is_private=request.is_private,
            text=text,
            duration_seconds=request.duration_seconds,
            summary_title=summary.title,
            summary_text=summary.body,
            summary_notes=request.notes.strip(),
            transcript_id=transcript_id,
            summary_failed=summary.failed,
        )

        if transcript_id is not None and not summary.failed:
            await self._store_summary(transcript_id, result)
        if request.is_private:
            result.local_id = await self._store_locally(request, result)

        logger.info(
            f"[SESSION] Finalized {request.session_id}: transcript={transcript_id} "
            f"local={result.local_id} summary_failed={summary.failed}"
        )
        if self.on_done is not None:
            self.on_done(request.user_id)
        return result

    async def _persist_transcript(self, request: FinalizeRequest, text: str) -> str | None:
        try:
            return await self.transcripts.create(
                request.user_id, text, request.started_at, request.duration_seconds
            )
        except PersistenceError as e:
            logger.error(f"[SESSION] Transcript not saved, summarizing raw text instead: {e}")
            return None

    async def _summarize_and_index(
        self, request: FinalizeRequest, text: str, transcript_id: str | None
    ) -> SummaryResult:
        summary_task = self._summarize(request, text, transcript_id)
        if transcript_id is None or self.indexer is None:
            return await summary_task
        summary, indexed = await asyncio.gather(
            summary_task, self.indexer(transcript_id, text), return_exceptions=True
        )
        if isinstance(indexed, Exception):
            logger.error(f"[SESSION] Indexing {transcript_id} crashed: {indexed!r}")
        return summary

    async def _summarize(
        self, request: FinalizeRequest, text: str, transcript_id: str | None
    ) -> SummaryResult:
        try:
            return await self.summarizer.summarize(
                SummaryRequest(
                    user_id=request.user_id,
                    transcript_id=transcript_id,
                    raw_text=text,
                    title=request.title,
                    notes=request.notes,
                )
            )
        except SummarizationError as e:
            logger.error(f"[SESSION] Summary failed for {request.session_id}: {e}")
            return SummaryResult.placeholder(request.title)
        except Exception as e:
            logger.error(f"[SESSION] Summarizer crashed for {request.session_id}: {e!r}")
            return SummaryResult.placeholder(request.title)

    async def _store_summary(self, transcript_id: str, result: FinalizedSession) -> None:
        try:
            await self.summaries.upsert(
                transcript_id, result.summary_title, result.summary_text, result.summary_notes
            )
        except PersistenceError as e:
            logger.error(f"[SESSION] Summary for {transcript_id} not saved: {e}")

    async def _store_locally(self, request: FinalizeRequest, result: FinalizedSession) -> str | None:
        memory = LocalMemory(
            user_id=request.user_id,
            text=result.text,
            created_at=request.started_at,
            duration_seconds=request.duration_seconds,
            summary_title=result.summary_title + PRIVATE_SUFFIX,
            summary_text=result.summary_text,
            summary_notes=result.summary_notes,
        )
        try:
            stored = await self.local_store.append(memory)
        except PersistenceError as e:
            logger.error(f"[SESSION] Private memory for {request.session_id} not stored: {e}")
            return None
        return stored.id
