import asyncio
from dataclasses import dataclass
from pathlib import Path

import pytest
from conftest import FakeEmbedder, FakeLLM, FakeTranscriber, Stores, open_stores

from memlane.db.stores import TranscriptStore
from memlane.errors import (
    CompletionError,
    DeviceUnavailable,
    PersistenceError,
    SessionStateError,
    TranscriptionError,
    TranscriptionTimeout,
)
from memlane.services.accumulator import SegmentStatus
from memlane.services.audio_source import PushAudioSource
from memlane.services.finalizer import SessionFinalizer
from memlane.services.library import MemoryLibrary
from memlane.services.local_store import LocalMemoryStore
from memlane.services.rag import RagQueryEngine
from memlane.services.session_manager import CaptureSession, SessionManager, SessionState
from memlane.services.summarizer import NO_CONTENT_BODY, PLACEHOLDER_BODY, UNTITLED, Summarizer

AUDIO = b"\x01\x00" * 1600


@dataclass
class Harness:
    stores: Stores
    user_id: str
    llm: FakeLLM
    transcriber: FakeTranscriber
    local: LocalMemoryStore
    finalizer: SessionFinalizer
    manager: SessionManager
    refreshed: list
    events: list

    def library(self) -> MemoryLibrary:
        return MemoryLibrary(
            self.stores.users,
            self.stores.transcripts,
            self.stores.summaries,
            self.stores.questions,
            self.local,
            Summarizer(self.llm, self.stores.transcripts),
        )


async def build(
    tmp_path: Path,
    transcriber: FakeTranscriber | None = None,
    llm: FakeLLM | None = None,
    transcripts: TranscriptStore | None = None,
    timeout: float = 0.5,
    retries: int = 1,
) -> Harness:
    stores = await open_stores(tmp_path)
    user = await stores.users.create("ada@example.com", "token-ada")
    transcriber = transcriber or FakeTranscriber()
    llm = llm or FakeLLM()
    transcripts = transcripts or stores.transcripts
    local = LocalMemoryStore(tmp_path / "private")
    rag = RagQueryEngine(transcripts, stores.questions, FakeEmbedder(), llm)
    refreshed: list = []
    events: list = []
    finalizer = SessionFinalizer(
        transcripts,
        stores.summaries,
        Summarizer(llm, transcripts),
        local,
        indexer=rag.index_transcript,
        on_done=refreshed.append,
    )
    manager = SessionManager(
        transcriber,
        finalizer,
        segment_seconds=60,
        transcription_timeout=timeout,
        transcription_retries=retries,
        emit=lambda user_id, event, data: events.append((event, data)),
    )
    return Harness(stores, user.id, llm, transcriber, local, finalizer, manager, refreshed, events)


def test_recorded_session_round_trips_through_the_store(tmp_path):
    async def scenario():
        h = await build(tmp_path)
        await h.manager.start_session(h.user_id, title="Standup")
        assert h.manager.feed_audio(h.user_id, AUDIO)
        result = await h.manager.stop_session(h.user_id)

        stored = await h.stores.transcripts.get(result.transcript_id)
        summary = await h.stores.summaries.get_by_transcript(result.transcript_id)
        await h.stores.database.dispose()
        return h, result, stored, summary

    h, result, stored, summary = asyncio.run(scenario())

    assert stored.user_id == h.user_id
    assert stored.text == result.text
    assert "hello" in stored.text
    assert stored.duration_seconds == pytest.approx(result.duration_seconds)
    assert stored.embedding_model == "fake-embed-1"
    assert summary.summary_title == "Standup"
    assert "- [ ] Send the notes to the team" in summary.summary_text
    assert h.refreshed == [h.user_id]
    assert h.manager.current(h.user_id).state == SessionState.DONE


def test_stopping_twice_finalizes_once(tmp_path):
    async def scenario():
        h = await build(tmp_path)
        session = await h.manager.start_session(h.user_id)
        h.manager.feed_audio(h.user_id, AUDIO)
        first, second = await asyncio.gather(session.stop(), session.stop())
        third = await session.stop()
        transcripts = await h.stores.transcripts.list_by_user(h.user_id)
        await h.stores.database.dispose()
        return h, first, second, third, transcripts

    h, first, second, third, transcripts = asyncio.run(scenario())

    assert first is second is third
    assert len(transcripts) == 1
    assert len(h.llm.prompts) == 1
    assert h.transcriber.calls == [0]
    assert len(h.refreshed) == 1


def test_stop_before_any_segment_completes_does_not_deadlock(tmp_path):
    async def scenario():
        h = await build(tmp_path, transcriber=FakeTranscriber(delays={0: 0.2}, default="late words"))
        session = await h.manager.start_session(h.user_id)
        h.manager.feed_audio(h.user_id, AUDIO)
        result = await asyncio.wait_for(session.stop(), timeout=5)
        await h.stores.database.dispose()
        return result

    result = asyncio.run(scenario())

    assert "late words" in result.text
    assert result.transcript_id is not None


def test_stop_with_no_audio_keeps_an_untitled_record(tmp_path):
    async def scenario():
        h = await build(tmp_path)
        session = await h.manager.start_session(h.user_id)
        result = await asyncio.wait_for(h.manager.stop_session(h.user_id), timeout=5)
        transcripts = await h.stores.transcripts.list_by_user(h.user_id)
        summary = await h.stores.summaries.get_by_transcript(result.transcript_id)
        await h.stores.database.dispose()
        return h, session, result, transcripts, summary

    h, session, result, transcripts, summary = asyncio.run(scenario())

    assert result.text == session.entries[0].marker
    assert result.summary_title == UNTITLED
    assert result.summary_text == NO_CONTENT_BODY
    assert [t.id for t in transcripts] == [result.transcript_id]
    assert transcripts[0].text == result.text
    assert transcripts[0].embedding_model is None
    assert (summary.summary_title, summary.summary_text) == (UNTITLED, NO_CONTENT_BODY)
    assert h.llm.prompts == []
    assert h.transcriber.calls == []


def test_silent_segments_are_stored_like_any_other_session(tmp_path):
    async def scenario():
        h = await build(tmp_path, transcriber=FakeTranscriber(default=""))
        session = await h.manager.start_session(h.user_id)
        h.manager.feed_audio(h.user_id, AUDIO)
        result = await h.manager.stop_session(h.user_id)
        memories = await h.library().list_memories(h.user_id)
        await h.stores.database.dispose()
        return h, session, result, memories

    h, session, result, memories = asyncio.run(scenario())

    assert h.transcriber.calls == [0]
    assert session.entries[0].status == SegmentStatus.EMPTY
    assert result.transcript_id is not None
    assert result.text == session.entries[0].marker
    assert [(m.id, m.summary_title, m.is_local) for m in memories] == [(result.transcript_id, UNTITLED, False)]
    assert h.llm.prompts == []


def test_transcription_timeout_contributes_empty_text(tmp_path):
    async def scenario():
        h = await build(tmp_path, transcriber=FakeTranscriber(delays={0: 5}), timeout=0.05)
        session = await h.manager.start_session(h.user_id)
        h.manager.feed_audio(h.user_id, AUDIO)
        result = await asyncio.wait_for(session.stop(), timeout=5)
        await h.stores.database.dispose()
        return session, result

    session, result = asyncio.run(scenario())

    assert result.text == session.entries[0].marker
    assert session.entries[0].status == SegmentStatus.TIMEOUT
    assert result.summary_title == UNTITLED
    assert session.snapshot().failed_segments == 1
    assert session.state == SessionState.DONE


def test_adapter_timeout_is_not_retried(tmp_path):
    transcriber = FakeTranscriber(responses={0: TranscriptionTimeout("read timed out")})

    async def scenario():
        h = await build(tmp_path, transcriber=transcriber, retries=2)
        session = await h.manager.start_session(h.user_id)
        h.manager.feed_audio(h.user_id, AUDIO)
        await session.stop()
        await h.stores.database.dispose()
        return session

    session = asyncio.run(scenario())

    assert transcriber.calls == [0]
    assert session.entries[0].status == SegmentStatus.TIMEOUT
    assert session.state == SessionState.DONE


def test_transcription_error_is_retried(tmp_path):
    transcriber = FakeTranscriber(responses={0: [TranscriptionError("blip"), "recovered"]})

    async def scenario():
        h = await build(tmp_path, transcriber=transcriber)
        session = await h.manager.start_session(h.user_id)
        h.manager.feed_audio(h.user_id, AUDIO)
        result = await session.stop()
        await h.stores.database.dispose()
        return result

    result = asyncio.run(scenario())

    assert "recovered" in result.text
    assert transcriber.calls == [0, 0]


def test_persistent_transcription_failure_keeps_the_session_going(tmp_path):
    transcriber = FakeTranscriber(responses={0: TranscriptionError("service down")})

    async def scenario():
        h = await build(tmp_path, transcriber=transcriber, retries=2)
        session = await h.manager.start_session(h.user_id)
        h.manager.feed_audio(h.user_id, AUDIO)
        result = await session.stop()
        await h.stores.database.dispose()
        return session, result

    session, result = asyncio.run(scenario())

    assert transcriber.calls == [0, 0, 0]
    assert session.snapshot().failed_segments == 1
    assert result.text == session.entries[0].marker
    assert session.state == SessionState.DONE


def test_segments_resolved_out_of_order_are_stored_in_order(tmp_path):
    transcriber = FakeTranscriber(
        responses={i: f"segment-{i}-words" for i in range(50)},
        delays={0: 0.15, 1: 0.1, 2: 0.05},
    )

    async def scenario():
        h = await build(tmp_path, transcriber=transcriber)
        source = PushAudioSource()
        session = CaptureSession(
            user_id=h.user_id,
            source=source,
            transcriber=transcriber,
            finalizer=h.finalizer,
            segment_seconds=0.02,
        )
        await session.start()
        for _ in range(20):
            source.feed(AUDIO)
            await asyncio.sleep(0.005)
        result = await session.stop()
        await h.stores.database.dispose()
        return session, result

    session, result = asyncio.run(scenario())

    indexes = [e.index for e in session.entries]
    assert indexes == list(range(len(indexes)))
    spoken = [e.index for e in session.entries if e.text]
    positions = [result.text.index(f"segment-{i}-words") for i in spoken]
    assert positions == sorted(positions)
    assert len(spoken) >= 2


def test_private_session_is_kept_off_the_server(tmp_path):
    async def scenario():
        h = await build(tmp_path, transcriber=FakeTranscriber(default="test one two three"))
        await h.manager.start_session(h.user_id, title="Diary", is_private=True)
        h.manager.feed_audio(h.user_id, AUDIO)
        result = await h.manager.stop_session(h.user_id)
        server = await h.stores.transcripts.list_by_user(h.user_id)
        local = await h.local.list(h.user_id)
        memories = await h.library().list_memories(h.user_id)
        await h.stores.database.dispose()
        return result, server, local, memories

    result, server, local, memories = asyncio.run(scenario())

    assert result.transcript_id is None
    assert server == []
    assert len(local) == 1
    assert local[0].id == result.local_id
    assert local[0].summary_title == "Diary (Private)"
    assert "test one two three" in local[0].text
    assert [(m.summary_title, m.is_local) for m in memories] == [("Diary (Private)", True)]


def test_storage_failure_still_produces_a_summary(tmp_path):
    class BrokenTranscriptStore(TranscriptStore):
        async def create(self, *args, **kwargs):
            raise PersistenceError("disk full")

    async def scenario():
        h = await build(tmp_path, transcripts=BrokenTranscriptStore(session_factory=None))
        await h.manager.start_session(h.user_id, title="Offsite")
        h.manager.feed_audio(h.user_id, AUDIO)
        result = await h.manager.stop_session(h.user_id)
        await h.stores.database.dispose()
        return h, result

    h, result = asyncio.run(scenario())

    assert result.transcript_id is None
    assert not result.summary_failed
    assert result.summary_title == "Offsite"
    assert "hello" in h.llm.prompts[0]


def test_summary_failure_keeps_transcript_with_placeholder(tmp_path):
    async def scenario():
        h = await build(tmp_path, llm=FakeLLM(error=CompletionError("model overloaded")))
        await h.manager.start_session(h.user_id, title="Lecture")
        h.manager.feed_audio(h.user_id, AUDIO)
        result = await h.manager.stop_session(h.user_id)
        stored = await h.stores.transcripts.get(result.transcript_id)
        summary = await h.stores.summaries.get_by_transcript(result.transcript_id)
        await h.stores.database.dispose()
        return result, stored, summary

    result, stored, summary = asyncio.run(scenario())

    assert result.summary_failed
    assert result.summary_text == PLACEHOLDER_BODY
    assert result.summary_title == "Lecture"
    assert stored is not None
    assert summary is None


def test_starting_a_new_session_stops_the_previous_one(tmp_path):
    async def scenario():
        h = await build(tmp_path)
        first = await h.manager.start_session(h.user_id, title="one")
        h.manager.feed_audio(h.user_id, AUDIO)
        second = await h.manager.start_session(h.user_id, title="two")
        await second.stop()
        transcripts = await h.stores.transcripts.list_by_user(h.user_id)
        await h.stores.database.dispose()
        return first, second, transcripts

    first, second, transcripts = asyncio.run(scenario())

    assert first.state == SessionState.DONE
    assert first.result.transcript_id is not None
    assert second.state == SessionState.DONE
    assert not first.source.is_open
    assert sorted(t.id for t in transcripts) == sorted([first.result.transcript_id, second.result.transcript_id])


def test_details_can_change_while_recording_only(tmp_path):
    async def scenario():
        h = await build(tmp_path)
        session = await h.manager.start_session(h.user_id, title="draft")
        session.update_details(title="Design review", notes="focus on auth")
        h.manager.feed_audio(h.user_id, AUDIO)
        result = await session.stop()
        with pytest.raises(SessionStateError):
            session.update_details(title="too late")
        await h.stores.database.dispose()
        return h, result

    h, result = asyncio.run(scenario())

    assert result.summary_title == "Design review"
    assert result.summary_notes == "focus on auth"
    assert "focus on auth" in h.llm.prompts[0]


def test_state_machine_rejects_skipping_states(tmp_path):
    async def scenario():
        h = await build(tmp_path)
        session = await h.manager.start_session(h.user_id)
        with pytest.raises(SessionStateError):
            session._transition(SessionState.DONE)
        await session.stop()
        with pytest.raises(SessionStateError):
            session._transition(SessionState.RECORDING)
        await h.stores.database.dispose()

    asyncio.run(scenario())


def test_feed_audio_without_a_recording_session(tmp_path):
    async def scenario():
        h = await build(tmp_path)
        before = h.manager.feed_audio(h.user_id, AUDIO)
        await h.manager.start_session(h.user_id)
        await h.manager.stop_session(h.user_id)
        after = h.manager.feed_audio(h.user_id, AUDIO)
        with pytest.raises(SessionStateError):
            h.manager.active(h.user_id)
        await h.stores.database.dispose()
        return before, after

    assert asyncio.run(scenario()) == (False, False)


def test_microphone_source_needs_a_device(tmp_path):
    async def scenario():
        h = await build(tmp_path)
        with pytest.raises(DeviceUnavailable):
            await h.manager.start_session(h.user_id, source="microphone")
        current = h.manager.current(h.user_id)
        await h.stores.database.dispose()
        return current

    assert asyncio.run(scenario()) is None


def test_session_events_follow_the_lifecycle(tmp_path):
    async def scenario():
        h = await build(tmp_path)
        await h.manager.start_session(h.user_id)
        h.manager.feed_audio(h.user_id, AUDIO)
        await h.manager.stop_session(h.user_id)
        await h.stores.database.dispose()
        return h.events

    events = asyncio.run(scenario())
    names = [name for name, _ in events]

    assert names[0] == "session_started"
    assert names[-1] == "session_done"
    states = [data["state"] for name, data in events if name == "state"]
    assert states == ["stopping", "finalizing", "done"]
    finalizing = next(i for i, (name, data) in enumerate(events) if name == "state" and data["state"] == "finalizing")
    assert names.index("segment") < finalizing


def test_unexpected_summarizer_crash_still_finishes_the_session(tmp_path):
    async def scenario():
        h = await build(tmp_path, llm=FakeLLM(error=RuntimeError("sdk blew up")))
        first = await h.manager.start_session(h.user_id, title="Retro")
        h.manager.feed_audio(h.user_id, AUDIO)
        result = await h.manager.stop_session(h.user_id)
        stored = await h.stores.transcripts.get(result.transcript_id)
        second = await h.manager.start_session(h.user_id)
        await second.stop()
        await h.stores.database.dispose()
        return h, first, second, result, stored

    h, first, second, result, stored = asyncio.run(scenario())

    assert first.state == SessionState.DONE
    assert result.summary_failed
    assert (result.summary_title, result.summary_text) == ("Retro", PLACEHOLDER_BODY)
    assert stored is not None
    assert second.state == SessionState.DONE
    assert h.refreshed == [h.user_id, h.user_id]


def test_crash_while_finalizing_still_reaches_done(tmp_path):
    class CrashingTranscriptStore(TranscriptStore):
        async def create(self, *args, **kwargs):
            raise RuntimeError("driver bug")

    async def scenario():
        h = await build(tmp_path, transcripts=CrashingTranscriptStore(session_factory=None))
        first = await h.manager.start_session(h.user_id, title="Standup")
        h.manager.feed_audio(h.user_id, AUDIO)
        # starting again stops the broken session first
        second = await h.manager.start_session(h.user_id)
        h.manager.feed_audio(h.user_id, AUDIO)
        await h.stores.database.dispose()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.state == SessionState.DONE
    assert first.result.transcript_id is None
    assert first.result.summary_failed
    assert first.result.summary_title == "Standup"
    assert "hello" in first.result.text
    assert second.state == SessionState.RECORDING
