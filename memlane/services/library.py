"""Read and housekeeping operations over a user's stored memories and questions."""

import logging
from dataclasses import dataclass
from datetime import datetime

from memlane.db.models import Question, Summary
from memlane.db.stores import QuestionStore, SummaryStore, TranscriptStore, UserStore
from memlane.errors import Forbidden, NotFound, SummarizationError

from .checklist import toggle_checkbox
from .formatting import format_duration
from .local_store import LocalMemoryStore
from .summarizer import UNTITLED, Summarizer, SummaryRequest

logger = logging.getLogger(__name__)


@dataclass
class MemoryView:
    """A transcript and its summary as shown in the memory list."""

    id: str
    text: str
    created_at: datetime
    duration_seconds: float
    summary_title: str
    summary_text: str
    summary_notes: str
    is_local: bool = False

    @property
    def duration_display(self) -> str:
        return format_duration(self.duration_seconds)


class MemoryLibrary:
    def __init__(
        self,
        users: UserStore,
        transcripts: TranscriptStore,
        summaries: SummaryStore,
        questions: QuestionStore,
        local_store: LocalMemoryStore,
        summarizer: Summarizer,
    ):
        self.users = users
        self.transcripts = transcripts
        self.summaries = summaries
        self.questions = questions
        self.local_store = local_store
        self.summarizer = summarizer

    async def list_memories(self, user_id: str) -> list[MemoryView]:
        """Server transcripts and private local memories, newest first."""
        stored = await self.transcripts.list_by_user(user_id)
        summaries = await self.summaries.map_by_transcript([t.id for t in stored])

        memories = []
        for transcript in stored:
            summary = summaries.get(transcript.id)
            memories.append(
                MemoryView(
                    id=transcript.id,
                    text=transcript.text,
                    created_at=transcript.created_at,
                    duration_seconds=transcript.duration_seconds,
                    summary_title=summary.summary_title if summary else UNTITLED,
                    summary_text=summary.summary_text if summary else "",
                    summary_notes=summary.summary_notes if summary else "",
                )
            )
        for local in await self.local_store.list(user_id):
            memories.append(
                MemoryView(
                    id=local.id,
                    text=local.text,
                    created_at=local.created_at,
                    duration_seconds=local.duration_seconds,
                    summary_title=local.summary_title,
                    summary_text=local.summary_text,
                    summary_notes=local.summary_notes,
                    is_local=True,
                )
            )

        memories.sort(key=lambda m: (_naive(m.created_at), m.id), reverse=True)
        return memories

    async def list_questions(self, user_id: str) -> list[Question]:
        return await self.questions.list_by_user(user_id)

    async def _owned_transcript(self, user_id: str, transcript_id: str):
        transcript = await self.transcripts.get(transcript_id)
        if transcript is None:
            raise NotFound(f"Transcript {transcript_id} not found")
        if transcript.user_id != user_id:
            raise Forbidden("Transcript belongs to another user")
        return transcript

    async def delete_transcript(self, user_id: str, transcript_id: str) -> None:
        """Delete a transcript and its summary. Only the owner may do this."""
        await self._owned_transcript(user_id, transcript_id)
        await self.transcripts.delete(transcript_id)
        logger.info(f"Deleted transcript {transcript_id} for {user_id}")

    async def delete_question(self, user_id: str, question_id: str) -> None:
        question = await self.questions.get(question_id)
        if question is None:
            raise NotFound(f"Question {question_id} not found")
        if question.user_id != user_id:
            raise Forbidden("Question belongs to another user")
        await self.questions.delete(question_id)
        logger.info(f"Deleted question {question_id} for {user_id}")

    async def toggle_checkbox(self, user_id: str, transcript_id: str, index: int) -> Summary:
        """Flip the index-th action item of a stored summary and save it."""
        await self._owned_transcript(user_id, transcript_id)
        summary = await self.summaries.get_by_transcript(transcript_id)
        if summary is None:
            raise NotFound(f"No summary for transcript {transcript_id}")

        updated = await self.summaries.update_text(transcript_id, toggle_checkbox(summary.summary_text, index))
        if updated is None:
            raise NotFound(f"No summary for transcript {transcript_id}")
        return updated

    async def resummarize(
        self, user_id: str, transcript_id: str, title: str | None = None, notes: str | None = None
    ) -> Summary:
        """Generate the summary again and replace the stored one.

        Title and notes default to the ones already stored. SummarizationError
        propagates and leaves the previous summary untouched.
        """
        await self._owned_transcript(user_id, transcript_id)
        existing = await self.summaries.get_by_transcript(transcript_id)
        if title is None:
            title = existing.summary_title if existing and existing.summary_title != UNTITLED else ""
        if notes is None:
            notes = existing.summary_notes if existing else ""

        try:
            result = await self.summarizer.summarize(
                SummaryRequest(user_id=user_id, transcript_id=transcript_id, title=title, notes=notes)
            )
        except SummarizationError:
            logger.error(f"Re-summarize failed for transcript {transcript_id}")
            raise

        return await self.summaries.upsert(transcript_id, result.title, result.body, notes)

    async def delete_account(self, user_id: str) -> None:
        """Remove every record the user owns, on the server and in the private store."""
        if await self.users.get(user_id) is None:
            raise NotFound("User not found")
        await self.users.delete_account(user_id)
        await self.local_store.clear(user_id)
        logger.info(f"Deleted account {user_id}")


def _naive(moment: datetime) -> datetime:
    return moment.replace(tzinfo=None) if moment.tzinfo is not None else moment
