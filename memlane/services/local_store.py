"""Local fallback store for privacy-mode sessions.

Private recordings never reach the database; the transcript and its summary are
appended to a per-user JSON Lines file instead and merged with the server
records when memories are listed.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from memlane.errors import PersistenceError

logger = logging.getLogger(__name__)


class LocalMemory(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    text: str
    created_at: datetime
    duration_seconds: float = 0.0
    summary_title: str
    summary_text: str = ""
    summary_notes: str = ""


class LocalMemoryStore:
    """Append-only per-user record files under *directory*."""

    def __init__(self, directory: Path):
        self.directory = directory
        self._lock = asyncio.Lock()

    def _path(self, user_id: str) -> Path:
        return self.directory / f"{user_id}.jsonl"

    async def append(self, memory: LocalMemory) -> LocalMemory:
        line = memory.model_dump_json() + "\n"
        path = self._path(memory.user_id)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(line)

        try:
            async with self._lock:
                await asyncio.to_thread(_write)
        except OSError as e:
            logger.error(f"Failed to store private memory: {e}")
            raise PersistenceError("Failed to store private memory") from e
        logger.info(f"Private memory {memory.id} stored locally")
        return memory

    async def list(self, user_id: str) -> list[LocalMemory]:
        path = self._path(user_id)

        def _read() -> list[str]:
            if not path.exists():
                return []
            return path.read_text(encoding="utf-8").splitlines()

        try:
            async with self._lock:
                lines = await asyncio.to_thread(_read)
        except OSError as e:
            raise PersistenceError("Failed to read private memories") from e

        memories: list[LocalMemory] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                memories.append(LocalMemory.model_validate_json(line))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable private memory line: {e}")
        return memories

    async def clear(self, user_id: str) -> None:
        path = self._path(user_id)
        async with self._lock:
            await asyncio.to_thread(path.unlink, missing_ok=True)
