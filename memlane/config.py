"""Memlane configuration via pydantic-settings."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="MEMLANE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # FastAPI server
    api_host: str = "127.0.0.1"
    api_port: int = 8766
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # AI providers
    ai_provider: Literal["disabled", "openai", "claude", "openrouter"] = "openai"
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    openrouter_api_key: str = ""
    openrouter_model: str = "google/gemma-3-27b-it:free"
    completion_model: str = "gpt-4o-mini"
    transcription_model: str = "whisper-1"
    embedding_model: str = "text-embedding-ada-002"
    llm_timeout_secs: float = 60.0

    # Capture: one segment is sealed and transcribed every `segment_seconds`
    segment_seconds: float = 30.0
    sample_rate: int = 16000
    transcription_timeout_secs: float = 45.0
    transcription_retries: int = 1

    # Retrieval
    rag_top_k: int = 5

    # Storage
    db_path: Path = Path.home() / "Documents" / "Memlane" / "memlane.db"
    private_dir: Path = Path.home() / "Documents" / "Memlane" / "private"

    # Optional user created at startup so a fresh install can be used right away
    bootstrap_user_email: str = ""
    bootstrap_user_token: str = ""

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.db_path.expanduser()}"


settings = Settings()
