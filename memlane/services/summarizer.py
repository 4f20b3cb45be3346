"""Memory summaries via LLM: a short title plus bullet notes and checkbox action items."""

import logging
from dataclasses import dataclass

from memlane.db.stores import TranscriptStore
from memlane.errors import CompletionError, PersistenceError, SummarizationError

from .ai_providers import CompletionService
from .formatting import SEGMENT_DIVIDER

logger = logging.getLogger(__name__)

UNTITLED = "Untitled"
NO_CONTENT_BODY = "• Transcript is too short or has no meaningful content."
PLACEHOLDER_BODY = "The summary could not be generated right now. Your transcript was kept; try summarizing it again later."

SUMMARY_PROMPT_TEMPLATE = """\
You will receive a raw audio transcript of a user's voice recording, along with optional user-provided notes and a custom title.

Your task is to extract and summarize the main points of the transcript. Use the notes to guide your summary if they provide helpful context. Ignore filler phrases, greetings (e.g., "hello", "1,2,3"), or anything unrelated to a real topic or idea.

User's Title: {title}
User's Notes: {notes}

Transcript:
\"\"\"{transcript}\"\"\"

Steps:
1. Generate a short, relevant title (5-8 words). If the user provided a helpful title, you may reuse or refine it.
2. Write clear, concise bullet point notes summarizing the key points or ideas from the transcript. Incorporate the user's notes if relevant.
3. Only include action items if the transcript or notes suggest next steps or priorities.
4. If no meaningful content is found, return:

Title: Untitled
• Transcript is too short or has no meaningful content.

Format:
Title: [Generated or Refined Title]
• Bullet point 1
• Bullet point 2
  • Sub-bullet (if needed)

Action Items (if any):
- [ ] ...
- [ ] ...
"""

CHUNK_SUMMARY_PROMPT = """\
Summarize the following part of a voice recording transcript concisely.
Keep all key points, ideas and next steps.

Transcript part:
{chunk}

Summary:
"""

# Threshold in chars above which we use chunked summarization
CHUNK_THRESHOLD = 12000
CHUNK_SIZE = 8000


@dataclass
class SummaryRequest:
    """What to summarize: a stored transcript, or raw text when there is none."""

    user_id: str
    transcript_id: str | None = None
    raw_text: str | None = None
    title: str = ""
    notes: str = ""


@dataclass
class SummaryResult:
    title: str
    body: str
    failed: bool = False

    @classmethod
    def no_content(cls, title: str = "") -> "SummaryResult":
        return cls(title=title.strip() or UNTITLED, body=NO_CONTENT_BODY)

    @classmethod
    def placeholder(cls, title: str = "") -> "SummaryResult":
        return cls(title=title.strip() or UNTITLED, body=PLACEHOLDER_BODY, failed=True)


def parse_summary(content: str, user_title: str = "") -> SummaryResult:
    """Split model output into title and body. A title the user typed always wins."""
    lines = content.strip().split("\n")
    generated_title = ""
    body_lines = lines
    if lines and lines[0].strip("*# ").lower().startswith("title:"):
        generated_title = lines[0].split(":", 1)[1].strip(" *")
        body_lines = lines[1:]
    title = user_title.strip() or generated_title or UNTITLED
    return SummaryResult(title=title, body="\n".join(body_lines).strip())


class Summarizer:
    """Generates a SummaryResult for a transcript using a completion service."""

    def __init__(self, llm: CompletionService, transcripts: TranscriptStore):
        self.llm = llm
        self.transcripts = transcripts

    async def summarize(self, request: SummaryRequest) -> SummaryResult:
        """Summarize the request's source text. Raises SummarizationError."""
        source = await self._resolve_source(request)

        prompt_args = dict(
            title=request.title.strip() or UNTITLED,
            notes=request.notes.strip() or "None",
        )
        try:
            if len(source) > CHUNK_THRESHOLD:
                source = await self._condense(source)
            content = await self.llm.generate_text(
                SUMMARY_PROMPT_TEMPLATE.format(transcript=source, **prompt_args),
                max_tokens=1500,
            )
        except CompletionError as e:
            logger.error(f"Summary generation failed: {e}")
            raise SummarizationError(str(e)) from e

        if not content.strip():
            raise SummarizationError("Model returned an empty summary")
        return parse_summary(content, request.title)

    async def _resolve_source(self, request: SummaryRequest) -> str:
        if request.transcript_id:
            try:
                transcript = await self.transcripts.get(request.transcript_id)
            except PersistenceError:
                transcript = None
            if transcript is not None and transcript.user_id == request.user_id and transcript.text.strip():
                return transcript.text
            logger.warning(f"Transcript {request.transcript_id} not readable, using raw text")

        if request.raw_text and request.raw_text.strip():
            return request.raw_text
        raise SummarizationError("No transcript text to summarize")

    async def _condense(self, transcript: str) -> str:
        """Summarize long transcripts part by part and feed the partial summaries on."""
        chunks = self._split_transcript(transcript)
        logger.info(f"Long transcript ({len(transcript)} chars) split into {len(chunks)} chunks")

        summaries = []
        for i, chunk in enumerate(chunks, 1):
            logger.info(f"Summarizing chunk {i}/{len(chunks)}...")
            try:
                summary = await self.llm.generate_text(CHUNK_SUMMARY_PROMPT.format(chunk=chunk), max_tokens=800)
                summaries.append(f"Part {i}:\n{summary.strip()}")
            except CompletionError as e:
                logger.warning(f"Chunk {i} summarization failed: {e}, using raw text")
                summaries.append(f"Part {i}:\n{chunk[:500]}...")
        return "\n\n".join(summaries)

    @staticmethod
    def _split_transcript(transcript: str) -> list[str]:
        """Split transcript into chunks at segment boundaries."""
        pieces = [p for p in transcript.split(SEGMENT_DIVIDER) if p.strip()]
        chunks: list[str] = []
        current_chunk: list[str] = []
        current_len = 0

        for piece in pieces:
            if current_len + len(piece) > CHUNK_SIZE and current_chunk:
                chunks.append("\n".join(current_chunk))
                current_chunk = []
                current_len = 0
            current_chunk.append(piece.strip())
            current_len += len(piece)

        if current_chunk:
            chunks.append("\n".join(current_chunk))

        return chunks if chunks else [transcript]
