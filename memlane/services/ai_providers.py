"""AI service abstraction: speech-to-text, text completion and embeddings.

Cloud providers (OpenAI, Claude, OpenRouter) sit behind small abstract classes so
the capture pipeline and the RAG engine never see vendor SDK types or errors.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import anthropic
import openai

from memlane.config import Settings
from memlane.errors import CompletionError, EmbeddingError, TranscriptionError, TranscriptionTimeout

logger = logging.getLogger(__name__)


class TranscriptionService(ABC):
    """Converts one encoded audio segment into text."""

    @abstractmethod
    async def transcribe(self, audio: bytes, filename: str = "segment.wav") -> str:
        """Return the spoken text ("" for silence); raise TranscriptionError on failure."""
        ...


class CompletionService(ABC):
    """Generates text from a prompt (summaries, answers)."""

    @abstractmethod
    async def generate_text(
        self, prompt: str, max_tokens: int = 2000, temperature: float | None = None
    ) -> str:
        ...


class EmbeddingService(ABC):
    """Turns text into a fixed-length vector. `model` tags every stored vector."""

    model: str = ""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        ...


class DisabledTranscription(TranscriptionService):
    async def transcribe(self, audio: bytes, filename: str = "segment.wav") -> str:
        raise TranscriptionError("Transcription is disabled. Set an OpenAI API key to enable it.")


class DisabledCompletion(CompletionService):
    async def generate_text(
        self, prompt: str, max_tokens: int = 2000, temperature: float | None = None
    ) -> str:
        raise CompletionError("Text generation is disabled. Configure an AI provider.")


class DisabledEmbedding(EmbeddingService):
    model = "disabled"

    async def embed(self, text: str) -> list[float]:
        raise EmbeddingError("Embeddings are disabled. Set an OpenAI API key to enable them.")


class OpenAITranscription(TranscriptionService):
    """Speech-to-text via the OpenAI Whisper API."""

    def __init__(self, api_key: str, model: str = "whisper-1"):
        self.client = openai.AsyncOpenAI(api_key=api_key)
        self.model = model

    async def transcribe(self, audio: bytes, filename: str = "segment.wav") -> str:
        try:
            response = await self.client.audio.transcriptions.create(
                model=self.model,
                file=(filename, audio),
            )
        except openai.APITimeoutError as e:
            logger.error(f"OpenAI transcription timed out: {e}")
            raise TranscriptionTimeout(str(e)) from e
        except openai.OpenAIError as e:
            logger.error(f"OpenAI transcription error: {e}")
            raise TranscriptionError(str(e)) from e
        return (response.text or "").strip()


class OpenAICompletion(CompletionService):
    """Completion via the OpenAI chat API (also used for OpenRouter)."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.model = model
        self.timeout = timeout

    async def generate_text(
        self, prompt: str, max_tokens: int = 2000, temperature: float | None = None
    ) -> str:
        kwargs = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=max_tokens,
                    **kwargs,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Completion timed out ({self.timeout:.0f}s)")
            raise CompletionError("Completion timed out") from e
        except openai.OpenAIError as e:
            logger.error(f"Completion error: {e}")
            raise CompletionError(str(e)) from e
        return response.choices[0].message.content or ""


class ClaudeCompletion(CompletionService):
    """Completion via the Anthropic Claude Haiku API."""

    def __init__(self, api_key: str, timeout: float = 60.0):
        self.client = anthropic.AsyncAnthropic(api_key=api_key)
        self.model = "claude-haiku-4-5-20251001"
        self.timeout = timeout

    async def generate_text(
        self, prompt: str, max_tokens: int = 2000, temperature: float | None = None
    ) -> str:
        kwargs = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        try:
            response = await asyncio.wait_for(
                self.client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    messages=[{"role": "user", "content": prompt}],
                    **kwargs,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Claude completion timed out ({self.timeout:.0f}s)")
            raise CompletionError("Completion timed out") from e
        except anthropic.AnthropicError as e:
            logger.error(f"Claude completion error: {e}")
            raise CompletionError(str(e)) from e
        return "".join(block.text for block in response.content if block.type == "text")


class OpenAIEmbedding(EmbeddingService):
    def __init__(self, api_key: str, model: str = "text-embedding-ada-002", timeout: float = 30.0):
        self.client = openai.AsyncOpenAI(api_key=api_key)
        self.model = model
        self.timeout = timeout

    async def embed(self, text: str) -> list[float]:
        try:
            response = await asyncio.wait_for(
                self.client.embeddings.create(model=self.model, input=text),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Embedding timed out ({self.timeout:.0f}s)")
            raise EmbeddingError("Embedding timed out") from e
        except openai.OpenAIError as e:
            logger.error(f"Embedding error: {e}")
            raise EmbeddingError(str(e)) from e
        return list(response.data[0].embedding)


@dataclass
class AIServices:
    transcriber: TranscriptionService
    llm: CompletionService
    embedder: EmbeddingService


def create_completion_service(
    mode: str,
    openai_api_key: str = "",
    anthropic_api_key: str = "",
    openrouter_api_key: str = "",
    openrouter_model: str = "",
    completion_model: str = "gpt-4o-mini",
    timeout: float = 60.0,
) -> CompletionService:
    """Factory function to create the completion service for *mode*."""
    if mode == "openai":
        if not openai_api_key:
            logger.warning("OpenAI selected but no API key set, falling back to disabled")
            return DisabledCompletion()
        return OpenAICompletion(api_key=openai_api_key, model=completion_model, timeout=timeout)

    elif mode == "claude":
        if not anthropic_api_key:
            logger.warning("Claude selected but no API key set, falling back to disabled")
            return DisabledCompletion()
        return ClaudeCompletion(api_key=anthropic_api_key, timeout=timeout)

    elif mode == "openrouter":
        if not openrouter_api_key:
            logger.warning("OpenRouter selected but no API key set, falling back to disabled")
            return DisabledCompletion()
        return OpenAICompletion(
            api_key=openrouter_api_key,
            model=openrouter_model or "google/gemma-3-27b-it:free",
            base_url="https://openrouter.ai/api/v1",
            timeout=timeout,
        )

    else:
        return DisabledCompletion()


def create_ai_services(settings: Settings) -> AIServices:
    """Build the three AI services from settings.

    Speech-to-text and embeddings always go through OpenAI; only completion
    follows `ai_provider`.
    """
    llm = create_completion_service(
        mode=settings.ai_provider,
        openai_api_key=settings.openai_api_key,
        anthropic_api_key=settings.anthropic_api_key,
        openrouter_api_key=settings.openrouter_api_key,
        openrouter_model=settings.openrouter_model,
        completion_model=settings.completion_model,
        timeout=settings.llm_timeout_secs,
    )
    if not settings.openai_api_key:
        logger.warning("No OpenAI API key set: transcription and embeddings are disabled")
        return AIServices(
            transcriber=DisabledTranscription(),
            llm=llm,
            embedder=DisabledEmbedding(),
        )
    return AIServices(
        transcriber=OpenAITranscription(settings.openai_api_key, model=settings.transcription_model),
        llm=llm,
        embedder=OpenAIEmbedding(settings.openai_api_key, model=settings.embedding_model),
    )
