"""Stores over the async SQLAlchemy session factory, one per aggregate.

Every SQLAlchemy failure is re-raised as PersistenceError so callers can decide
whether storage is critical for them (transcripts) or bookkeeping (questions).
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Sequence

import numpy as np
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from memlane.errors import PersistenceError

from .models import Question, Summary, Transcript, User

logger = logging.getLogger(__name__)

DistanceFn = Callable[[np.ndarray, np.ndarray], np.ndarray]


def negative_inner_product(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Distance used for retrieval: smaller is nearer (same convention as pgvector `<#>`)."""
    return -(matrix @ query)


class _Store:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._factory = session_factory

    @asynccontextmanager
    async def _session(self, action: str):
        try:
            async with self._factory() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"{action} failed: {e}")
            raise PersistenceError(f"{action} failed") from e


class UserStore(_Store):
    async def create(self, email: str, api_token: str, personalization: str = "") -> User:
        async with self._session("create user") as db:
            user = User(email=email, api_token=api_token, personalization=personalization)
            db.add(user)
            await db.commit()
            return user

    async def get(self, user_id: str) -> User | None:
        async with self._session("get user") as db:
            return await db.get(User, user_id)

    async def get_by_email(self, email: str) -> User | None:
        async with self._session("get user by email") as db:
            result = await db.execute(select(User).where(User.email == email))
            return result.scalar_one_or_none()

    async def get_by_token(self, api_token: str) -> User | None:
        async with self._session("get user by token") as db:
            result = await db.execute(select(User).where(User.api_token == api_token))
            return result.scalar_one_or_none()

    async def update(
        self,
        user_id: str,
        *,
        personalization: str | None = None,
        private_mode: bool | None = None,
    ) -> User | None:
        async with self._session("update user") as db:
            user = await db.get(User, user_id)
            if user is None:
                return None
            if personalization is not None:
                user.personalization = personalization
            if private_mode is not None:
                user.private_mode = private_mode
            await db.commit()
            return user

    async def delete_account(self, user_id: str) -> None:
        """Remove the user together with all their summaries, transcripts and questions."""
        async with self._session("delete account") as db:
            transcript_ids = select(Transcript.id).where(Transcript.user_id == user_id)
            await db.execute(delete(Summary).where(Summary.transcript_id.in_(transcript_ids)))
            await db.execute(delete(Transcript).where(Transcript.user_id == user_id))
            await db.execute(delete(Question).where(Question.user_id == user_id))
            await db.execute(delete(User).where(User.id == user_id))
            await db.commit()


class TranscriptStore(_Store):
    """Transcript persistence plus nearest-neighbour search over stored embeddings."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        distance: DistanceFn = negative_inner_product,
    ):
        super().__init__(session_factory)
        self._distance = distance

    async def create(
        self,
        user_id: str,
        text: str,
        created_at: datetime,
        duration: float,
        private_origin: bool = False,
    ) -> str:
        async with self._session("create transcript") as db:
            transcript = Transcript(
                user_id=user_id,
                text=text,
                created_at=created_at,
                duration_seconds=duration,
                private_origin=private_origin,
            )
            db.add(transcript)
            await db.commit()
            return transcript.id

    async def get(self, transcript_id: str) -> Transcript | None:
        async with self._session("get transcript") as db:
            return await db.get(Transcript, transcript_id)

    async def delete(self, transcript_id: str) -> None:
        """Delete a transcript and its summary in one transaction."""
        async with self._session("delete transcript") as db:
            await db.execute(delete(Summary).where(Summary.transcript_id == transcript_id))
            await db.execute(delete(Transcript).where(Transcript.id == transcript_id))
            await db.commit()

    async def list_by_user(self, user_id: str) -> list[Transcript]:
        async with self._session("list transcripts") as db:
            result = await db.execute(
                select(Transcript)
                .where(Transcript.user_id == user_id)
                .order_by(Transcript.created_at.desc())
            )
            return list(result.scalars())

    async def update_embedding(self, transcript_id: str, vector: Sequence[float], model: str) -> None:
        async with self._session("update embedding") as db:
            transcript = await db.get(Transcript, transcript_id)
            if transcript is None:
                return
            transcript.embedding = json.dumps([float(v) for v in vector])
            transcript.embedding_model = model
            await db.commit()

    async def list_needing_embedding(self, user_id: str, model: str) -> list[Transcript]:
        """Transcripts with no embedding, or one produced by a different model."""
        transcripts = await self.list_by_user(user_id)
        return [
            t for t in transcripts
            if not t.private_origin and (t.embedding is None or t.embedding_model != model)
        ]

    async def find_nearest(
        self, user_id: str, vector: Sequence[float], k: int, model: str
    ) -> list[Transcript]:
        """Return up to *k* of the user's transcripts nearest to *vector*, nearest first.

        Only vectors produced by *model* with the query's dimension take part;
        ties are broken by transcript id.
        """
        async with self._session("find nearest transcripts") as db:
            result = await db.execute(
                select(Transcript).where(
                    Transcript.user_id == user_id,
                    Transcript.embedding.is_not(None),
                    Transcript.embedding_model == model,
                    Transcript.private_origin == False,  # noqa: E712
                )
            )
            rows = list(result.scalars())

        query = np.asarray(vector, dtype=np.float64)
        candidates: list[Transcript] = []
        vectors: list[list[float]] = []
        for row in rows:
            stored = json.loads(row.embedding)
            if len(stored) != query.shape[0]:
                logger.warning(f"Skipping transcript {row.id}: embedding dimension {len(stored)} != {query.shape[0]}")
                continue
            candidates.append(row)
            vectors.append(stored)

        if not candidates or k <= 0:
            return []

        distances = self._distance(np.asarray(vectors, dtype=np.float64), query)
        order = sorted(range(len(candidates)), key=lambda i: (float(distances[i]), candidates[i].id))
        return [candidates[i] for i in order[:k]]


class SummaryStore(_Store):
    async def upsert(
        self,
        transcript_id: str,
        summary_title: str,
        summary_text: str,
        summary_notes: str = "",
    ) -> Summary:
        """Create the transcript's summary or replace the existing one."""
        async with self._session("upsert summary") as db:
            result = await db.execute(select(Summary).where(Summary.transcript_id == transcript_id))
            summary = result.scalar_one_or_none()
            if summary is None:
                summary = Summary(
                    transcript_id=transcript_id,
                    summary_title=summary_title,
                    summary_text=summary_text,
                    summary_notes=summary_notes,
                )
                db.add(summary)
            else:
                summary.summary_title = summary_title
                summary.summary_text = summary_text
                summary.summary_notes = summary_notes
                summary.updated_at = datetime.utcnow()
            await db.commit()
            return summary

    async def get_by_transcript(self, transcript_id: str) -> Summary | None:
        async with self._session("get summary") as db:
            result = await db.execute(select(Summary).where(Summary.transcript_id == transcript_id))
            return result.scalar_one_or_none()

    async def update_text(self, transcript_id: str, summary_text: str) -> Summary | None:
        async with self._session("update summary text") as db:
            result = await db.execute(select(Summary).where(Summary.transcript_id == transcript_id))
            summary = result.scalar_one_or_none()
            if summary is None:
                return None
            summary.summary_text = summary_text
            summary.updated_at = datetime.utcnow()
            await db.commit()
            return summary

    async def map_by_transcript(self, transcript_ids: Sequence[str]) -> dict[str, Summary]:
        if not transcript_ids:
            return {}
        async with self._session("list summaries") as db:
            result = await db.execute(select(Summary).where(Summary.transcript_id.in_(list(transcript_ids))))
            return {s.transcript_id: s for s in result.scalars()}


class QuestionStore(_Store):
    async def create(self, user_id: str, query: str, answer: str) -> str:
        async with self._session("create question") as db:
            question = Question(user_id=user_id, query=query, answer=answer)
            db.add(question)
            await db.commit()
            return question.id

    async def get(self, question_id: str) -> Question | None:
        async with self._session("get question") as db:
            return await db.get(Question, question_id)

    async def delete(self, question_id: str) -> None:
        async with self._session("delete question") as db:
            await db.execute(delete(Question).where(Question.id == question_id))
            await db.commit()

    async def list_by_user(self, user_id: str) -> list[Question]:
        async with self._session("list questions") as db:
            result = await db.execute(
                select(Question)
                .where(Question.user_id == user_id)
                .order_by(Question.created_at.desc())
            )
            return list(result.scalars())
