"""Shared fakes for the AI providers and a throwaway SQLite database."""

import asyncio
from dataclasses import dataclass
from pathlib import Path

import pytest

from memlane.config import Settings
from memlane.db.database import Database
from memlane.db.stores import (
    QuestionStore,
    SummaryStore,
    TranscriptStore,
    UserStore,
    negative_inner_product,
)
from memlane.services.ai_providers import (
    AIServices,
    CompletionService,
    EmbeddingService,
    TranscriptionService,
)

SUMMARY_REPLY = """Title: Weekly team sync
• Reviewed the release plan
• Agreed to move the demo to Friday

Action Items (if any):
- [ ] Send the notes to the team
- [ ] Book the demo room"""


class FakeTranscriber(TranscriptionService):
    """Answers per segment index, parsed from the ``segment-<n>.wav`` filename.

    A response may be a string, an exception instance, or a list of those
    consumed one per attempt.
    """

    def __init__(self, responses: dict | None = None, delays: dict | None = None, default: str = "hello"):
        self.responses = dict(responses or {})
        self.delays = dict(delays or {})
        self.default = default
        self.calls: list[int] = []

    async def transcribe(self, audio: bytes, filename: str = "segment.wav") -> str:
        index = int(filename.rsplit("-", 1)[1].split(".")[0])
        self.calls.append(index)
        delay = self.delays.get(index, 0)
        if delay:
            await asyncio.sleep(delay)
        result = self.responses.get(index, self.default)
        if isinstance(result, list):
            result = result.pop(0) if result else self.default
        if isinstance(result, Exception):
            raise result
        return result


class FakeLLM(CompletionService):
    def __init__(self, reply: str = SUMMARY_REPLY, error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    async def generate_text(self, prompt: str, max_tokens: int = 2000, temperature: float | None = None) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


class FakeEmbedder(EmbeddingService):
    """Maps text to a vector by the first keyword it contains."""

    def __init__(self, table: dict[str, list[float]] | None = None, default=None, model: str = "fake-embed-1"):
        self.table = dict(table or {})
        self.default = default if default is not None else [0.0, 0.0, 1.0]
        self.model = model
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        lowered = text.lower()
        for keyword, vector in self.table.items():
            if keyword in lowered:
                return list(vector)
        return list(self.default)


@dataclass
class Stores:
    database: Database
    users: UserStore
    transcripts: TranscriptStore
    summaries: SummaryStore
    questions: QuestionStore


async def open_stores(path: Path, distance=negative_inner_product) -> Stores:
    """Everything in one asyncio.run() call: aiosqlite connections are bound to their loop."""
    database = Database(f"sqlite+aiosqlite:///{path / 'memlane.db'}")
    await database.init()
    factory = database.session_factory
    return Stores(
        database=database,
        users=UserStore(factory),
        transcripts=TranscriptStore(factory, distance=distance),
        summaries=SummaryStore(factory),
        questions=QuestionStore(factory),
    )


@pytest.fixture
def fake_ai() -> AIServices:
    return AIServices(transcriber=FakeTranscriber(), llm=FakeLLM(), embedder=FakeEmbedder())


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        db_path=tmp_path / "db" / "memlane.db",
        private_dir=tmp_path / "private",
        openai_api_key="",
        segment_seconds=30.0,
        transcription_timeout_secs=1.0,
        bootstrap_user_email="ada@example.com",
        bootstrap_user_token="token-ada",
    )

