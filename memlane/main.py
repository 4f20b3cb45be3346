"""Memlane API: FastAPI application.

Records capture sessions (audio pushed over a WebSocket or read from a local
microphone), transcribes them segment by segment, stores transcripts with AI
summaries and answers questions over the user's own history.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from memlane import __version__
from memlane.auth import current_user, stream_user, websocket_user
from memlane.config import Settings, settings as default_settings
from memlane.db.database import Database
from memlane.db.models import User
from memlane.db.stores import QuestionStore, SummaryStore, TranscriptStore, UserStore
from memlane.errors import CompletionError, EmbeddingError, InvalidRequest, MemlaneError, Unauthorized
from memlane.models.schemas import (
    AnswerResponse,
    AskLiveRequest,
    CheckboxToggleRequest,
    MemoryItem,
    PersonalizationBody,
    PrivateModeBody,
    QueryRequest,
    QuestionItem,
    ReindexResponse,
    ResummarizeRequest,
    SessionInfo,
    SessionSnapshot,
    SessionStartRequest,
    SessionStopResponse,
    SessionUpdateRequest,
    SummaryResponse,
)
from memlane.services.ai_providers import AIServices, create_ai_services
from memlane.services.audio_source import MicrophoneSource, PushAudioSource
from memlane.services.events import EventBroadcaster
from memlane.services.finalizer import SessionFinalizer
from memlane.services.formatting import format_duration
from memlane.services.library import MemoryLibrary
from memlane.services.local_store import LocalMemoryStore
from memlane.services.rag import RagQueryEngine
from memlane.services.session_manager import CaptureSession, SessionManager
from memlane.services.summarizer import Summarizer

logger = logging.getLogger("memlane")

GENERIC_FAILURE = "Something went wrong, please try again."


def _session_info(session: CaptureSession) -> SessionInfo:
    return SessionInfo(
        id=session.id,
        title=session.title,
        notes=session.notes,
        started_at=session.started_at,
        state=session.state.value,
        is_private=session.is_private,
        source="stream" if isinstance(session.source, PushAudioSource) else "microphone",
    )


def create_app(*, settings: Settings | None = None, ai_services: AIServices | None = None) -> FastAPI:
    """Build the application. Tests pass their own settings and fake AI services."""
    settings = settings or default_settings

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown."""
        logger.info("Starting Memlane")

        database = Database(settings.database_url)
        await database.init()
        factory = database.session_factory

        ai = ai_services or create_ai_services(settings)
        users = UserStore(factory)
        transcripts = TranscriptStore(factory)
        summaries = SummaryStore(factory)
        questions = QuestionStore(factory)
        local_store = LocalMemoryStore(settings.private_dir.expanduser())
        events = EventBroadcaster()

        summarizer = Summarizer(ai.llm, transcripts)
        rag = RagQueryEngine(transcripts, questions, ai.embedder, ai.llm, top_k=settings.rag_top_k)
        finalizer = SessionFinalizer(
            transcripts,
            summaries,
            summarizer,
            local_store,
            indexer=rag.index_transcript,
            on_done=lambda user_id: events.publish(user_id, "memories_changed"),
        )
        sessions = SessionManager(
            ai.transcriber,
            finalizer,
            segment_seconds=settings.segment_seconds,
            sample_rate=settings.sample_rate,
            transcription_timeout=settings.transcription_timeout_secs,
            transcription_retries=settings.transcription_retries,
            emit=events.publish,
            microphone_factory=lambda: MicrophoneSource(sample_rate=settings.sample_rate),
        )

        app.state.database = database
        app.state.users = users
        app.state.events = events
        app.state.rag = rag
        app.state.sessions = sessions
        app.state.library = MemoryLibrary(users, transcripts, summaries, questions, local_store, summarizer)

        if settings.bootstrap_user_email and settings.bootstrap_user_token:
            if await users.get_by_email(settings.bootstrap_user_email) is None:
                await users.create(settings.bootstrap_user_email, settings.bootstrap_user_token)
                logger.info(f"Created bootstrap user {settings.bootstrap_user_email}")

        yield

        logger.info("Shutting down Memlane")
        await sessions.shutdown()
        await database.dispose()

    app = FastAPI(
        title="Memlane",
        description="Personal memory capture: recorded sessions, AI summaries and questions over your history",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MemlaneError)
    async def memlane_error_handler(request: Request, exc: MemlaneError):
        if isinstance(exc, (EmbeddingError, CompletionError)):
            logger.error(f"{request.method} {request.url.path}: {exc}")
            message = GENERIC_FAILURE
        else:
            message = str(exc) or type(exc).__name__
        return JSONResponse(status_code=exc.status_code, content={"error": message})

    # --- Capture sessions ---

    @app.post("/api/session/start", response_model=SessionInfo)
    async def start_session(body: SessionStartRequest, request: Request, user: User = Depends(current_user)):
        """Start recording; any session the user still has open is stopped first."""
        is_private = body.private if body.private is not None else user.private_mode
        session = await request.app.state.sessions.start_session(
            user.id, title=body.title, notes=body.notes, is_private=is_private, source=body.source
        )
        return _session_info(session)

    @app.get("/api/session/current")
    async def get_current_session(request: Request, user: User = Depends(current_user)):
        """The user's latest session with its transcript so far."""
        session = request.app.state.sessions.current(user.id)
        if session is None:
            return {"active": False}
        snapshot = session.snapshot()
        return {
            "active": session.is_active,
            "snapshot": SessionSnapshot(
                session=_session_info(session),
                transcript=snapshot.text,
                elapsed_seconds=snapshot.elapsed_seconds,
                elapsed_display=format_duration(snapshot.elapsed_seconds),
                segments=snapshot.segments,
                failed_segments=snapshot.failed_segments,
            ),
        }

    @app.put("/api/session/current", response_model=SessionInfo)
    async def update_current_session(
        body: SessionUpdateRequest, request: Request, user: User = Depends(current_user)
    ):
        session = request.app.state.sessions.active(user.id)
        session.update_details(title=body.title, notes=body.notes)
        return _session_info(session)

    @app.post("/api/session/stop", response_model=SessionStopResponse)
    async def stop_session(request: Request, user: User = Depends(current_user)):
        """Stop the current session and return the finalized outcome."""
        result = await request.app.state.sessions.stop_session(user.id)
        return SessionStopResponse(
            session_id=result.session_id,
            is_private=result.is_private,
            transcript=result.text,
            duration_seconds=result.duration_seconds,
            duration_display=format_duration(result.duration_seconds),
            transcript_id=result.transcript_id,
            local_id=result.local_id,
            summary_title=result.summary_title,
            summary_text=result.summary_text,
            summary_notes=result.summary_notes,
            summary_failed=result.summary_failed,
        )

    @app.get("/api/session/stream")
    async def stream_session(request: Request, user: User = Depends(stream_user)):
        """Server-Sent Events endpoint for live session events."""
        events: EventBroadcaster = request.app.state.events
        client_queue = events.subscribe(user.id)

        async def event_generator():
            try:
                while True:
                    try:
                        data = await asyncio.wait_for(client_queue.get(), timeout=30.0)
                        yield f"data: {json.dumps(data)}\n\n"
                    except asyncio.TimeoutError:
                        # Send keepalive comment
                        yield ": keepalive\n\n"
            finally:
                events.unsubscribe(user.id, client_queue)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.websocket("/api/session/audio")
    async def session_audio(websocket: WebSocket):
        """Binary frames of little-endian PCM16 mono audio for the active session."""
        await websocket.accept()
        try:
            user = await websocket_user(websocket)
        except Unauthorized as e:
            await websocket.close(code=4401, reason=str(e))
            return

        sessions: SessionManager = websocket.app.state.sessions
        frames = 0
        try:
            while True:
                data = await websocket.receive_bytes()
                if not sessions.feed_audio(user.id, data):
                    await websocket.send_json({"error": "No active session"})
                    await websocket.close(code=1000)
                    break
                frames += len(data) // 2
        except WebSocketDisconnect:
            pass
        logger.info(f"Audio stream for {user.id} closed after {frames} frames")

    # --- Memories ---

    @app.get("/api/transcripts", response_model=list[MemoryItem])
    async def list_transcripts(request: Request, user: User = Depends(current_user)):
        """Stored and private memories, newest first."""
        memories = await request.app.state.library.list_memories(user.id)
        return [
            MemoryItem(
                id=m.id,
                text=m.text,
                created_at=m.created_at,
                duration_seconds=m.duration_seconds,
                duration_display=m.duration_display,
                summary_title=m.summary_title,
                summary_text=m.summary_text,
                summary_notes=m.summary_notes,
                is_local=m.is_local,
            )
            for m in memories
        ]

    @app.delete("/api/transcripts/{transcript_id}")
    async def delete_transcript(transcript_id: str, request: Request, user: User = Depends(current_user)):
        await request.app.state.library.delete_transcript(user.id, transcript_id)
        request.app.state.events.publish(user.id, "memories_changed")
        return {"status": "ok"}

    @app.post("/api/transcripts/reindex", response_model=ReindexResponse)
    async def reindex_transcripts(request: Request, user: User = Depends(current_user)):
        """Embed transcripts that are missing from retrieval or carry a stale model's vector."""
        result = await request.app.state.rag.reindex(user.id)
        return ReindexResponse(indexed=result.indexed, failed=result.failed)

    @app.post("/api/transcripts/{transcript_id}/summary", response_model=SummaryResponse)
    async def regenerate_summary(
        transcript_id: str, body: ResummarizeRequest, request: Request, user: User = Depends(current_user)
    ):
        summary = await request.app.state.library.resummarize(
            user.id, transcript_id, title=body.title, notes=body.notes
        )
        return SummaryResponse(
            transcript_id=transcript_id,
            summary_title=summary.summary_title,
            summary_text=summary.summary_text,
            summary_notes=summary.summary_notes,
        )

    @app.patch("/api/transcripts/{transcript_id}/checkbox", response_model=SummaryResponse)
    async def toggle_checkbox(
        transcript_id: str, body: CheckboxToggleRequest, request: Request, user: User = Depends(current_user)
    ):
        summary = await request.app.state.library.toggle_checkbox(user.id, transcript_id, body.index)
        return SummaryResponse(
            transcript_id=transcript_id,
            summary_title=summary.summary_title,
            summary_text=summary.summary_text,
            summary_notes=summary.summary_notes,
        )

    # --- Questions ---

    @app.post("/api/rag", response_model=AnswerResponse)
    async def ask_history(body: QueryRequest, request: Request, user: User = Depends(current_user)):
        """Answer a question from the user's past transcripts."""
        answer = await request.app.state.rag.answer(user.id, body.query, user.personalization)
        return AnswerResponse(answer=answer)

    @app.post("/api/ask-live", response_model=AnswerResponse)
    async def ask_live(body: AskLiveRequest, request: Request, user: User = Depends(current_user)):
        """Answer a question from the session being recorded, or a transcript sent along."""
        transcript = body.transcript
        if transcript is None:
            session = request.app.state.sessions.current(user.id)
            if session is not None:
                transcript = session.result.text if session.result else session.snapshot().text
        if not transcript or not transcript.strip():
            raise InvalidRequest("No transcript available")
        answer = await request.app.state.rag.ask_live(user.id, body.query, transcript, user.personalization)
        return AnswerResponse(answer=answer)

    @app.get("/api/questions", response_model=list[QuestionItem])
    async def list_questions(request: Request, user: User = Depends(current_user)):
        questions = await request.app.state.library.list_questions(user.id)
        return [QuestionItem.model_validate(q) for q in questions]

    @app.delete("/api/questions/{question_id}")
    async def delete_question(question_id: str, request: Request, user: User = Depends(current_user)):
        await request.app.state.library.delete_question(user.id, question_id)
        return {"status": "ok"}

    # --- Account ---

    @app.get("/api/personalization", response_model=PersonalizationBody)
    async def get_personalization(user: User = Depends(current_user)):
        return PersonalizationBody(personalization=user.personalization or "")

    @app.put("/api/personalization", response_model=PersonalizationBody)
    async def update_personalization(body: PersonalizationBody, request: Request, user: User = Depends(current_user)):
        updated = await request.app.state.users.update(user.id, personalization=body.personalization)
        return PersonalizationBody(personalization=updated.personalization if updated else body.personalization)

    @app.get("/api/private-mode", response_model=PrivateModeBody)
    async def get_private_mode(user: User = Depends(current_user)):
        return PrivateModeBody(private_mode=user.private_mode)

    @app.put("/api/private-mode", response_model=PrivateModeBody)
    async def update_private_mode(body: PrivateModeBody, request: Request, user: User = Depends(current_user)):
        await request.app.state.users.update(user.id, private_mode=body.private_mode)
        return PrivateModeBody(private_mode=body.private_mode)

    @app.delete("/api/user")
    async def delete_account(request: Request, user: User = Depends(current_user)):
        """Delete the account with every transcript, summary, question and private memory."""
        session = request.app.state.sessions.current(user.id)
        if session is not None and session.is_active:
            await session.stop()
        await request.app.state.library.delete_account(user.id)
        return {"status": "ok"}

    # --- Health ---

    @app.get("/api/health")
    async def health(request: Request):
        """Health check endpoint."""
        return {
            "status": "ok",
            "version": __version__,
            "ai_provider": settings.ai_provider,
            "embedding_model": request.app.state.rag.embedder.model,
        }

    return app


app = create_app()
