"""Tests for the builder agent: profile derivation, artifact generation and run_build."""

import asyncio
import json
import re
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from coach_intake.agents.builder import (
    ARTIFACT_MAX_TOKENS,
    DEFAULT_FREQUENCY,
    SUMMARY_MAX_CHARS,
    build_artifact_prompt,
    derive_safety_profile,
    gender_preference_from,
    generate_artifact,
    goal_timeline_from,
    new_artifact_id,
    run_build,
    session_summary,
    training_frequency_from,
)
from coach_intake.controller import create_generation_lock
from coach_intake.errors import ArtifactStructuralError, SessionNotFoundError
from coach_intake.utils.todo_list import merge_updates


@pytest.fixture
def building_session(complete_session):
    session = create_generation_lock(complete_session)
    session["sophisticationLevel"] = "beginner"
    return session


class TestProfileDerivation:
    def test_defaults_on_empty_list(self, empty_todo):
        assert training_frequency_from(empty_todo) == DEFAULT_FREQUENCY
        assert gender_preference_from(empty_todo) == "neutral"
        assert goal_timeline_from(empty_todo) == "6 months"

    def test_collected_values(self, complete_todo):
        assert training_frequency_from(complete_todo) == 3
        assert gender_preference_from(complete_todo) == "female"
        assert goal_timeline_from(complete_todo) == "6 months"

    def test_safety_profile(self, complete_todo):
        profile = derive_safety_profile(complete_todo, "beginner")
        assert profile["injuries"] == ["bad knees"]
        assert profile["contraindications"] == ["no deep squats"]
        assert profile["equipment"] == ["dumbbells", "pull-up bar"]
        assert profile["time_constraints"] == {"session_duration": "45 minutes", "time_of_day": "morning"}
        assert profile["experience_level"] == "beginner"

    def test_safety_profile_splits_and_ignores_none(self, empty_todo):
        todo = merge_updates(empty_todo, {
            "injuryConsiderations": {"value": "bad knees and lower back; left shoulder"},
            "movementLimitations": {"value": "none"},
        }, 1)
        profile = derive_safety_profile(todo)
        assert profile["injuries"] == ["bad knees", "lower back", "left shoulder"]
        assert profile["contraindications"] == []
        assert profile["equipment"] == ["basic"]
        assert profile["experience_level"] == "unknown"


class TestSummaryAndIds:
    def test_summary_joins_user_turns(self, complete_session):
        complete_session["history"].append({"role": "user", "text": "3 days a week", "timestamp": ""})
        summary = session_summary(complete_session)
        assert summary.endswith("Responses: I want to lose weight | 3 days a week")
        assert "user-1" in summary

    def test_summary_without_answers(self, base_session):
        assert session_summary(base_session).endswith("Responses: No responses")

    def test_summary_truncated(self, complete_session):
        complete_session["history"].append({"role": "user", "text": "x" * 2000, "timestamp": ""})
        responses = session_summary(complete_session).split("Responses: ", 1)[1]
        assert len(responses) == SUMMARY_MAX_CHARS + 3
        assert responses.endswith("...")

    def test_artifact_id_format(self):
        assert re.fullmatch(r"user_user-1_coach_\d{13}", new_artifact_id("user-1"))


class TestBuildArtifactPrompt:
    def test_prompt_contents(self, building_session):
        system_prompt, user_prompt = build_artifact_prompt(building_session, "user_user-1_coach_1")

        assert "- Primary Fitness Goals: lose 10kg and get stronger" in system_prompt
        assert "- Equipment Access: dumbbells, pull-up bar" in system_prompt
        assert '"coach_id": "user_user-1_coach_1"' in system_prompt
        assert '"volume_progression_limit": "10%_weekly"' in system_prompt
        assert '"training_frequency": 3' in system_prompt
        assert "Coach gender preference: female." in system_prompt
        assert "EMMA: Emma - The Encouraging Coach" in system_prompt
        assert "beginner level user who answered 1 questions" in user_prompt

    def test_advanced_gets_tighter_progression(self, building_session):
        building_session["sophisticationLevel"] = "advanced"
        system_prompt, _ = build_artifact_prompt(building_session, "id")
        assert '"volume_progression_limit": "5%_weekly"' in system_prompt


class TestGenerateArtifact:
    @patch("coach_intake.agents.builder.complete", new_callable=AsyncMock)
    def test_valid_artifact(self, mock_complete, mock_config, building_session, valid_artifact):
        mock_complete.return_value = json.dumps(valid_artifact)

        artifact = asyncio.run(generate_artifact(building_session, created_at="2026-01-01T00:00:00+00:00"))

        assert artifact["validation"]["safety"] == {"score": 10, "warnings": [], "approved": True}
        assert artifact["validation"]["coherence"]["score"] == 10
        metadata = artifact["metadata"]
        assert metadata["created_date"] == "2026-01-01T00:00:00+00:00"
        assert metadata["session_id"] == "intake_done"
        assert metadata["safety_profile"]["injuries"] == ["bad knees"]
        assert metadata["coach_creator_session_summary"].endswith("I want to lose weight")
        assert artifact["generated_prompts"]["motivation_prompt"] == ""
        kwargs = mock_complete.await_args.kwargs
        assert kwargs["role"] == "builder"
        assert kwargs["max_tokens"] == ARTIFACT_MAX_TOKENS

    @patch("coach_intake.agents.builder.complete", new_callable=AsyncMock)
    def test_fenced_output_with_prose(self, mock_complete, mock_config, building_session, valid_artifact):
        mock_complete.return_value = f"Here you go:\n```json\n{json.dumps(valid_artifact)}\n```"
        artifact = asyncio.run(generate_artifact(building_session))
        assert artifact["coach_name"] == "Emma_Your_Strength_Guide"

    @patch("coach_intake.agents.builder.complete", new_callable=AsyncMock)
    def test_safety_warnings_recorded(self, mock_complete, mock_config, building_session, valid_artifact):
        del valid_artifact["technical_config"]
        mock_complete.return_value = json.dumps(valid_artifact)

        artifact = asyncio.run(generate_artifact(building_session))

        safety = artifact["validation"]["safety"]
        assert safety["score"] == 5
        assert not safety["approved"]

    @patch("coach_intake.agents.builder.complete", new_callable=AsyncMock)
    def test_missing_prompt_is_structural(self, mock_complete, mock_config, building_session, valid_artifact):
        del valid_artifact["generated_prompts"]["personality_prompt"]
        mock_complete.return_value = json.dumps(valid_artifact)

        with pytest.raises(ArtifactStructuralError, match="personality prompt"):
            asyncio.run(generate_artifact(building_session))

    @patch("coach_intake.agents.builder.complete", new_callable=AsyncMock)
    def test_empty_output_is_structural(self, mock_complete, mock_config, building_session):
        mock_complete.return_value = ""
        with pytest.raises(ArtifactStructuralError, match="Invalid JSON"):
            asyncio.run(generate_artifact(building_session))


class TestRunBuild:
    PAYLOAD = {"user_id": "user-1", "session_id": "intake_done"}

    @patch("coach_intake.agents.builder.complete", new_callable=AsyncMock)
    def test_success_records_artifact(self, mock_complete, mock_config, building_session, valid_artifact, memory_store):
        mock_complete.return_value = json.dumps(valid_artifact)

        async def scenario():
            await memory_store.put(building_session)
            result = await run_build(self.PAYLOAD, memory_store)
            stored = await memory_store.get("user-1", "intake_done")
            artifact = await memory_store.get_artifact("user-1", "user_user-1_coach_1")
            return result, stored, artifact

        result, stored, artifact = asyncio.run(scenario())

        assert result == {"status": "complete", "artifact_id": "user_user-1_coach_1"}
        generation = stored["configGeneration"]
        assert generation["status"] == "complete"
        assert generation["artifactId"] == "user_user-1_coach_1"
        assert generation["startedAt"] == building_session["configGeneration"]["startedAt"]
        assert "completedAt" in generation
        assert stored["isDeleted"] is True
        assert artifact["coach_name"] == "Emma_Your_Strength_Guide"

    @patch("coach_intake.agents.builder.complete", new_callable=AsyncMock)
    def test_structural_failure_marks_failed(self, mock_complete, mock_config, building_session, valid_artifact, memory_store):
        del valid_artifact["coach_name"]
        mock_complete.return_value = json.dumps(valid_artifact)

        async def scenario():
            await memory_store.put(building_session)
            result = await run_build(self.PAYLOAD, memory_store)
            return result, await memory_store.get("user-1", "intake_done")

        result, stored = asyncio.run(scenario())

        assert result["status"] == "failed"
        assert "Missing coach name." in result["error"]
        assert stored["configGeneration"]["status"] == "failed"
        assert stored["configGeneration"]["error"] == result["error"]
        assert "isDeleted" not in stored

    @patch("coach_intake.agents.builder.complete", new_callable=AsyncMock)
    def test_transport_failure_marks_failed(self, mock_complete, mock_config, building_session, memory_store):
        mock_complete.side_effect = httpx.ConnectError("down")

        async def scenario():
            await memory_store.put(building_session)
            await run_build(self.PAYLOAD, memory_store)
            return await memory_store.get("user-1", "intake_done")

        assert asyncio.run(scenario())["configGeneration"]["error"] == "down"

    @patch("coach_intake.agents.builder.complete", new_callable=AsyncMock)
    def test_incomplete_session_fails(self, mock_complete, mock_config, building_session, memory_store):
        building_session["isComplete"] = False

        async def scenario():
            await memory_store.put(building_session)
            return await run_build(self.PAYLOAD, memory_store)

        assert asyncio.run(scenario()) == {"status": "failed", "error": "Session is not complete."}
        mock_complete.assert_not_awaited()

    @pytest.mark.parametrize("generation", [
        {"status": "not_started"},
        {"status": "complete", "artifactId": "coach_1"},
        {"status": "failed", "error": "boom"},
    ])
    @patch("coach_intake.agents.builder.complete", new_callable=AsyncMock)
    def test_skips_unless_in_progress(self, mock_complete, generation, mock_config, complete_session, memory_store):
        session = {**complete_session, "configGeneration": generation}

        async def scenario():
            await memory_store.put(session)
            return await run_build(self.PAYLOAD, memory_store), memory_store.writes

        result, writes = asyncio.run(scenario())

        assert result == {"status": "skipped"}
        assert writes == 1
        mock_complete.assert_not_awaited()

    def test_missing_session_raises(self, mock_config, memory_store):
        with pytest.raises(SessionNotFoundError):
            asyncio.run(run_build(self.PAYLOAD, memory_store))
