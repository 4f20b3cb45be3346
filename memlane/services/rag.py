"""Question answering over the user's own transcripts.

Indexing and querying share one EmbeddingService, and every stored vector is
tagged with that service's model name, so retrieval never compares vectors from
different embedding models.
"""

import logging
from dataclasses import dataclass

from memlane.db.stores import QuestionStore, TranscriptStore
from memlane.errors import EmbeddingError, InvalidRequest, PersistenceError

from .ai_providers import CompletionService, EmbeddingService

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5

NO_CONTEXT_ANSWER = (
    "I don't have any relevant information from your past transcripts to answer this question."
)
EMPTY_ANSWER = "Sorry, I couldn't find an answer."

RAG_PROMPT_TEMPLATE = """\
You are an AI assistant that answers questions. Base these answers on the user's past transcripts as much as possible. These transcripts can be from lectures, meetings, conversations, or even the user themselves.

ABOUT THE USER:
{personalization}

RELEVANT TRANSCRIPTS:
{context}

INSTRUCTIONS:
1. Answer to the best ability based on information in the transcripts above and profile information.
2. Do not explicitly say you are basing your answer on the user's profile information, and do not repeat it word for word.
3. Do not make up any information.
4. Be concise and direct in your answer.
5. If quoting from transcripts, indicate which excerpt you're referencing (e.g. "Excerpt 2").
6. It is okay if you don't know.

USER QUESTION: {query}
"""

LIVE_PROMPT_TEMPLATE = """\
You are an AI assistant that answers questions. Base these answers on the user's transcript as much as possible. This transcript can be from a lecture, a meeting, a conversation, or even the user themselves.

ABOUT THE USER:
{personalization}

RELEVANT TRANSCRIPT:
{transcript}

INSTRUCTIONS:
1. Answer to the best ability based on information in the transcript above and profile information.
2. Do not explicitly say you are basing your answer on the user's profile information, and do not repeat it word for word.
3. Do not make up information.
4. Be concise and direct in your answer.
5. If quoting from the transcript, indicate which part you're referencing.

USER QUESTION: {query}
"""


@dataclass
class ReindexResult:
    indexed: int
    failed: int


def build_context(texts: list[str]) -> str:
    return "\n\n".join(f"[Excerpt {i}]\n{text.strip()}" for i, text in enumerate(texts, 1))


def _profile_block(personalization: str) -> str:
    personalization = (personalization or "").strip()
    return f"About the user: {personalization}" if personalization else ""


def _strip_profile_echo(answer: str, personalization: str) -> str:
    """Remove verbatim copies of the profile text from a generated answer."""
    profile = (personalization or "").strip()
    if not profile or profile.lower() not in answer.lower():
        return answer
    lowered = answer.lower()
    needle = profile.lower()
    parts = []
    start = 0
    while (pos := lowered.find(needle, start)) != -1:
        parts.append(answer[start:pos])
        start = pos + len(needle)
    parts.append(answer[start:])
    return " ".join(p.strip() for p in parts if p.strip())


class RagQueryEngine:
    """Embeds questions, retrieves nearest transcripts and generates grounded answers."""

    def __init__(
        self,
        transcripts: TranscriptStore,
        questions: QuestionStore,
        embedder: EmbeddingService,
        llm: CompletionService,
        top_k: int = DEFAULT_TOP_K,
    ):
        self.transcripts = transcripts
        self.questions = questions
        self.embedder = embedder
        self.llm = llm
        self.top_k = top_k

    async def index_transcript(self, transcript_id: str, text: str) -> bool:
        """Embed a stored transcript so it takes part in retrieval. Best-effort."""
        try:
            vector = await self.embedder.embed(text)
            await self.transcripts.update_embedding(transcript_id, vector, self.embedder.model)
        except (EmbeddingError, PersistenceError) as e:
            logger.warning(f"[RAG] Transcript {transcript_id} not indexed: {e}")
            return False
        logger.info(f"[RAG] Indexed transcript {transcript_id} ({self.embedder.model})")
        return True

    async def reindex(self, user_id: str) -> ReindexResult:
        """Embed the user's transcripts that have no vector or one from another model."""
        stale = await self.transcripts.list_needing_embedding(user_id, self.embedder.model)
        indexed = 0
        for transcript in stale:
            if await self.index_transcript(transcript.id, transcript.text):
                indexed += 1
        logger.info(f"[RAG] Reindex for {user_id}: {indexed}/{len(stale)} transcripts embedded")
        return ReindexResult(indexed=indexed, failed=len(stale) - indexed)

    async def answer(self, user_id: str, query: str, personalization: str = "") -> str:
        """Answer *query* from the user's history.

        EmbeddingError and CompletionError propagate; failing to log the
        question does not.
        """
        query = (query or "").strip()
        if not query:
            raise InvalidRequest("Missing query")

        vector = await self.embedder.embed(query)
        hits = await self.transcripts.find_nearest(user_id, vector, self.top_k, model=self.embedder.model)
        logger.info(f"[RAG] Found {len(hits)} relevant transcripts for query: '{query[:80]}'")

        if not hits:
            return NO_CONTEXT_ANSWER

        prompt = RAG_PROMPT_TEMPLATE.format(
            personalization=_profile_block(personalization),
            context=build_context([hit.text for hit in hits]),
            query=query,
        )
        answer = await self._generate(prompt, personalization)
        await self._record_question(user_id, query, answer)
        return answer

    async def ask_live(self, user_id: str, query: str, transcript: str, personalization: str = "") -> str:
        """Answer *query* from a transcript in hand (the session being recorded)."""
        query = (query or "").strip()
        if not query:
            raise InvalidRequest("Missing query")

        prompt = LIVE_PROMPT_TEMPLATE.format(
            personalization=_profile_block(personalization),
            transcript=transcript.strip(),
            query=query,
        )
        answer = await self._generate(prompt, personalization)
        await self._record_question(user_id, query, answer)
        return answer

    async def _generate(self, prompt: str, personalization: str) -> str:
        answer = (await self.llm.generate_text(prompt, max_tokens=800, temperature=0.3)).strip()
        answer = _strip_profile_echo(answer, personalization)
        return answer or EMPTY_ANSWER

    async def _record_question(self, user_id: str, query: str, answer: str) -> None:
        try:
            await self.questions.create(user_id, query, answer)
        except PersistenceError as e:
            logger.error(f"Failed to store question/answer: {e}")
