"""End-to-end intake tests: full turns through the graph with the LLM boundary mocked."""

import asyncio
import json
from contextlib import ExitStack
from unittest.mock import AsyncMock, patch

import pytest

from coach_intake.agents.builder import run_build
from coach_intake.conversation import load_active_session, retry_build, start_session, stream_answer, submit_answer
from coach_intake.dispatch import LocalTaskDispatcher
from coach_intake.errors import ConditionalWriteError, GenerationTransportError, SessionNotFoundError
from coach_intake.store import InMemorySessionStore

QUESTION = "Love it! What are your main fitness goals right now?\nSOPHISTICATION_LEVEL: BEGINNER"
COMPLETION = "Amazing, you're all set! Your coach build starts now.\nSOPHISTICATION_LEVEL: BEGINNER"


async def _fake_complete(system_prompt, user_prompt, role, history=None, **kwargs):
    return COMPLETION if "NO MORE QUESTIONS" in system_prompt else QUESTION


def _streamer(text, size=5):
    def fake_stream_complete(*args, **kwargs):
        async def gen():
            for i in range(0, len(text), size):
                yield text[i:i + size]
        return gen()
    return fake_stream_complete


class _Intake:
    """Patches every LLM call site; extraction results are queued per turn."""

    def __init__(self, extractions=(), artifact=None):
        self.extract = AsyncMock(side_effect=list(extractions))
        self.builder = AsyncMock(return_value=json.dumps(artifact or {}))
        self._stack = ExitStack()

    def __enter__(self):
        self._stack.enter_context(patch("coach_intake.agents.extractor.complete_structured", new=self.extract))
        self._stack.enter_context(patch("coach_intake.agents.questioner.complete", new=_fake_complete))
        self._stack.enter_context(patch("coach_intake.agents.questioner.stream_complete", new=_streamer(QUESTION)))
        self._stack.enter_context(patch("coach_intake.agents.builder.complete", new=self.builder))
        return self

    def __exit__(self, *exc):
        return self._stack.__exit__(*exc)


class TestStartSession:
    def test_opening_message_persisted(self, mock_config, memory_store):
        with _Intake():
            started = asyncio.run(start_session("user-1", memory_store, session_id="intake_1"))
            session = asyncio.run(memory_store.get("user-1", "intake_1"))

        assert started == {"session_id": "intake_1", "first_question": "Love it! What are your main fitness goals right now?"}
        assert [t["role"] for t in session["history"]] == ["assistant"]
        assert session["configGeneration"] == {"status": "not_started"}

    def test_restart_over_running_build_rejected(self, mock_config, memory_store):
        async def scenario():
            started = await start_session("user-1", memory_store, session_id="intake_1")
            session = await memory_store.get("user-1", "intake_1")
            await memory_store.put({**session, "configGeneration": {"status": "in_progress", "startedAt": session["startedAt"]}})
            await start_session("user-1", memory_store, session_id=started["session_id"])

        with _Intake(), pytest.raises(ConditionalWriteError):
            asyncio.run(scenario())

    def test_restart_over_answered_session_rejected(self, mock_config, memory_store, mock_dispatcher):
        extraction = {"coachGenderPreference": {"value": "female", "confidence": "high"}}

        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            await submit_answer("user-1", "intake_1", "A female coach please", memory_store, mock_dispatcher)
            with pytest.raises(ConditionalWriteError):
                await start_session("user-1", memory_store, session_id="intake_1")
            return await memory_store.get("user-1", "intake_1")

        with _Intake([extraction]):
            session = asyncio.run(scenario())

        assert len(session["history"]) == 3
        assert session["todoList"]["coachGenderPreference"]["value"] == "female"


class TestSubmitAnswer:
    def test_partial_answer_asks_next_question(self, mock_config, memory_store, mock_dispatcher):
        extraction = {"coachGenderPreference": {"value": "female", "confidence": "high"}}

        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            outcome = await submit_answer("user-1", "intake_1", "A female coach please", memory_store, mock_dispatcher)
            return outcome, await memory_store.get("user-1", "intake_1")

        with _Intake([extraction]):
            outcome, session = asyncio.run(scenario())

        assert outcome["next_question"] == "Love it! What are your main fitness goals right now?"
        assert not outcome["is_complete"]
        assert outcome["progress"]["required_completed"] == 1
        assert outcome["sophistication_level"] == "beginner"
        assert outcome["handoff"] == {}
        assert [t["role"] for t in session["history"]] == ["assistant", "user", "assistant"]
        assert session["todoList"]["coachGenderPreference"]["provenance"] == 1
        mock_dispatcher.invoke.assert_not_awaited()

    def test_extraction_failure_keeps_conversation_going(self, mock_config, memory_store, mock_dispatcher):
        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            return await submit_answer("user-1", "intake_1", "hmm not sure", memory_store, mock_dispatcher)

        with _Intake([RuntimeError("extractor down")]):
            outcome = asyncio.run(scenario())

        assert outcome["progress"]["required_completed"] == 0
        assert outcome["next_question"].endswith("?")

    def test_completing_answer_hands_off_once(self, mock_config, memory_store, mock_dispatcher, all_required_updates):
        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            first = await submit_answer("user-1", "intake_1", "Everything about me...", memory_store, mock_dispatcher)
            # A repeated completion signal while the build is running.
            second = await submit_answer("user-1", "intake_1", "Oh and I love rowing", memory_store, mock_dispatcher)
            return first, second, await memory_store.get("user-1", "intake_1")

        with _Intake([all_required_updates, {}]):
            first, second, session = asyncio.run(scenario())

        assert first["is_complete"]
        assert first["completion_message"] == "Amazing, you're all set! Your coach build starts now."
        assert first["handoff"]["dispatched"]
        assert second["handoff"]["already_generating"]
        mock_dispatcher.invoke.assert_awaited_once_with(
            "build-coach-config", {"user_id": "user-1", "session_id": "intake_1"}
        )
        assert session["isComplete"]
        assert "completedAt" in session
        assert session["configGeneration"]["status"] == "in_progress"
        assert [t["role"] for t in session["history"]] == ["assistant", "user", "assistant", "user", "assistant"]
        assert session["history"][3]["text"] == "Oh and I love rowing"

    def test_full_build_retires_session(self, mock_config, memory_store, all_required_updates, valid_artifact):
        dispatcher = LocalTaskDispatcher({"build-coach-config": lambda payload: run_build(payload, memory_store)})

        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            outcome = await submit_answer("user-1", "intake_1", "Everything about me...", memory_store, dispatcher)
            await dispatcher.drain()
            return outcome, await memory_store.get("user-1", "intake_1")

        with _Intake([all_required_updates], artifact=valid_artifact) as intake:
            outcome, session = asyncio.run(scenario())

        assert outcome["handoff"]["dispatched"]
        assert session["configGeneration"]["status"] == "complete"
        assert session["configGeneration"]["artifactId"] == valid_artifact["coach_id"]
        assert session["isDeleted"] is True
        intake.builder.assert_awaited_once()
        artifact = asyncio.run(memory_store.get_artifact("user-1", valid_artifact["coach_id"]))
        assert artifact["metadata"]["session_id"] == "intake_1"

        with pytest.raises(SessionNotFoundError):
            asyncio.run(load_active_session(memory_store, "user-1", "intake_1"))

    def test_failed_build_can_be_retried(self, mock_config, memory_store, all_required_updates, valid_artifact):
        dispatcher = LocalTaskDispatcher({"build-coach-config": lambda payload: run_build(payload, memory_store)})

        async def scenario(intake):
            await start_session("user-1", memory_store, session_id="intake_1")
            await submit_answer("user-1", "intake_1", "Everything about me...", memory_store, dispatcher)
            await dispatcher.drain()
            failed = await memory_store.get("user-1", "intake_1")

            intake.builder.return_value = json.dumps(valid_artifact)
            retry = await submit_answer("user-1", "intake_1", "Any update?", memory_store, dispatcher)
            await dispatcher.drain()
            return failed, retry, await memory_store.get("user-1", "intake_1")

        with _Intake([all_required_updates, {}], artifact={"coach_name": "broken"}) as intake:
            failed, retry, session = asyncio.run(scenario(intake))

        assert failed["configGeneration"]["status"] == "failed"
        assert retry["handoff"]["dispatched"]
        assert session["configGeneration"]["status"] == "complete"

    def test_unknown_session(self, mock_config, memory_store, mock_dispatcher):
        with pytest.raises(SessionNotFoundError):
            asyncio.run(submit_answer("user-1", "missing", "hello", memory_store, mock_dispatcher))


class TestRetryBuild:
    def test_failed_build_retried_without_new_answer(self, mock_config, memory_store, all_required_updates, valid_artifact):
        dispatcher = LocalTaskDispatcher({"build-coach-config": lambda payload: run_build(payload, memory_store)})

        async def scenario(intake):
            await start_session("user-1", memory_store, session_id="intake_1")
            await submit_answer("user-1", "intake_1", "Everything about me...", memory_store, dispatcher)
            await dispatcher.drain()
            intake.builder.return_value = json.dumps(valid_artifact)
            handoff = await retry_build("user-1", "intake_1", memory_store, dispatcher)
            await dispatcher.drain()
            return handoff, await memory_store.get("user-1", "intake_1")

        with _Intake([all_required_updates], artifact={"coach_name": "broken"}) as intake:
            handoff, session = asyncio.run(scenario(intake))

        assert handoff["dispatched"]
        assert session["configGeneration"]["status"] == "complete"
        assert len(session["history"]) == 3
        assert intake.builder.await_count == 2

    def test_dispatch_error_then_retry(self, mock_config, memory_store, mock_dispatcher, all_required_updates):
        mock_dispatcher.invoke.side_effect = [GenerationTransportError("queue down"), None]

        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            first = await submit_answer("user-1", "intake_1", "Everything about me...", memory_store, mock_dispatcher)
            handoff = await retry_build("user-1", "intake_1", memory_store, mock_dispatcher)
            return first, handoff, await memory_store.get("user-1", "intake_1")

        with _Intake([all_required_updates]):
            first, handoff, session = asyncio.run(scenario())

        assert first["handoff"]["dispatch_error"] == "queue down"
        assert handoff["dispatched"]
        assert session["configGeneration"]["status"] == "in_progress"
        assert mock_dispatcher.invoke.await_count == 2

    def test_running_build_not_redispatched(self, mock_config, memory_store, mock_dispatcher, all_required_updates):
        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            await submit_answer("user-1", "intake_1", "Everything about me...", memory_store, mock_dispatcher)
            return await retry_build("user-1", "intake_1", memory_store, mock_dispatcher)

        with _Intake([all_required_updates]):
            handoff = asyncio.run(scenario())

        assert handoff["already_generating"]
        mock_dispatcher.invoke.assert_awaited_once()

    def test_incomplete_intake_rejected(self, mock_config, memory_store, mock_dispatcher):
        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            await retry_build("user-1", "intake_1", memory_store, mock_dispatcher)

        with _Intake(), pytest.raises(ValueError, match="not finished"):
            asyncio.run(scenario())
        mock_dispatcher.invoke.assert_not_awaited()


class TestStreamAnswer:
    @staticmethod
    async def _collect(agen):
        return [event async for event in agen]

    def test_chunks_match_result_and_history(self, mock_config, memory_store, mock_dispatcher):
        extraction = {"coachGenderPreference": {"value": "female", "confidence": "high"}}

        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            events = await self._collect(
                stream_answer("user-1", "intake_1", "A female coach please", memory_store, mock_dispatcher)
            )
            return events, await memory_store.get("user-1", "intake_1")

        with _Intake([extraction]):
            events, session = asyncio.run(scenario())

        chunks = [e["text"] for e in events if e["type"] == "chunk"]
        result = events[-1]
        assert result["type"] == "result"
        assert "".join(chunks) == result["next_question"]
        assert result["next_question"] == "Love it! What are your main fitness goals right now?"
        assert result["sophistication_level"] == "beginner"
        assert session["history"][-1]["text"] == result["next_question"]

    def test_stream_matches_submit(self, mock_config, mock_dispatcher):
        extraction = {"age": {"value": 34, "confidence": "high"}}
        streamed_store, submitted_store = InMemorySessionStore(), InMemorySessionStore()

        async def scenario():
            for store in (streamed_store, submitted_store):
                await start_session("user-1", store, session_id="intake_1")
            events = await self._collect(stream_answer("user-1", "intake_1", "I'm 34", streamed_store, mock_dispatcher))
            submitted = await submit_answer("user-1", "intake_1", "I'm 34", submitted_store, mock_dispatcher)
            return events[-1], submitted

        with _Intake([extraction, extraction]):
            streamed, submitted = asyncio.run(scenario())

        assert streamed["next_question"] == submitted["next_question"]
        assert streamed["progress"] == submitted["progress"]

    def test_completion_streams_and_hands_off(self, mock_config, memory_store, mock_dispatcher, all_required_updates):
        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            return await self._collect(
                stream_answer("user-1", "intake_1", "Everything about me...", memory_store, mock_dispatcher)
            )

        with _Intake([all_required_updates]):
            events = asyncio.run(scenario())

        result = events[-1]
        assert result["is_complete"]
        assert "".join(e["text"] for e in events[:-1]) == result["completion_message"]
        assert result["handoff"]["dispatched"]
        mock_dispatcher.invoke.assert_awaited_once()

    def test_closing_early_persists_nothing(self, mock_config, memory_store, mock_dispatcher):
        extraction = {"coachGenderPreference": {"value": "female", "confidence": "high"}}

        async def scenario():
            await start_session("user-1", memory_store, session_id="intake_1")
            writes = memory_store.writes
            events = stream_answer("user-1", "intake_1", "A female coach please", memory_store, mock_dispatcher)
            first = await events.__anext__()
            await events.aclose()
            return first, writes, memory_store.writes, await memory_store.get("user-1", "intake_1")

        with _Intake([extraction]):
            first, writes_before, writes_after, session = asyncio.run(scenario())

        assert first["type"] == "chunk"
        assert writes_after == writes_before
        assert len(session["history"]) == 1
