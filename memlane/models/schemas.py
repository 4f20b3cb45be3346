"""Pydantic models for the Memlane API and the session event stream."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# --- Capture sessions ---


class SessionStartRequest(BaseModel):
    """Request to start a new recording session."""

    title: str = ""
    notes: str = ""
    # None means "use the account's privacy-mode setting"
    private: bool | None = None
    source: Literal["stream", "microphone"] = "stream"


class SessionUpdateRequest(BaseModel):
    title: str | None = None
    notes: str | None = None


class SessionInfo(BaseModel):
    """Current session information."""

    id: str
    title: str
    notes: str = ""
    started_at: datetime
    state: str
    is_private: bool = False
    source: str = "stream"


class SessionSnapshot(BaseModel):
    """The live transcript as accumulated so far."""

    session: SessionInfo
    transcript: str
    elapsed_seconds: float
    elapsed_display: str
    segments: int
    failed_segments: int


class SessionStopResponse(BaseModel):
    """Outcome of stopping a session."""

    session_id: str
    is_private: bool
    transcript: str
    duration_seconds: float
    duration_display: str
    transcript_id: str | None = None
    local_id: str | None = None
    summary_title: str
    summary_text: str
    summary_notes: str = ""
    summary_failed: bool = False


# --- Memories ---


class MemoryItem(BaseModel):
    id: str
    text: str
    created_at: datetime
    duration_seconds: float
    duration_display: str
    summary_title: str
    summary_text: str
    summary_notes: str = ""
    is_local: bool = False


class SummaryResponse(BaseModel):
    transcript_id: str
    summary_title: str
    summary_text: str
    summary_notes: str = ""


class ResummarizeRequest(BaseModel):
    title: str | None = None
    notes: str | None = None


class CheckboxToggleRequest(BaseModel):
    index: int = Field(ge=0)


class ReindexResponse(BaseModel):
    indexed: int
    failed: int


# --- Questions ---


class QueryRequest(BaseModel):
    query: str


class AskLiveRequest(BaseModel):
    query: str
    # Falls back to the active session's transcript when omitted
    transcript: str | None = None


class AnswerResponse(BaseModel):
    answer: str


class QuestionItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    query: str
    answer: str
    created_at: datetime


# --- Account settings ---


class PersonalizationBody(BaseModel):
    personalization: str = ""


class PrivateModeBody(BaseModel):
    private_mode: bool
