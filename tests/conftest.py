"""Shared fixtures for the coach intake test suite."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from coach_intake.state import create_session
from coach_intake.store import InMemorySessionStore
from coach_intake.utils.todo_list import create_empty_todo_list

REQUIRED_VALUES = {
    "coachGenderPreference": "female",
    "primaryGoals": "lose 10kg and get stronger",
    "goalTimeline": "6 months",
    "age": 34,
    "lifeStageContext": "parent of two young kids",
    "experienceLevel": "beginner",
    "trainingHistory": "on and off gym for a few months",
    "trainingFrequency": 3,
    "sessionDuration": "45 minutes",
    "timeOfDayPreference": "morning",
    "injuryConsiderations": "bad knees",
    "movementLimitations": "no deep squats",
    "equipmentAccess": ["dumbbells", "pull-up bar"],
    "trainingEnvironment": "home garage",
    "movementPreferences": "kettlebell work",
    "movementDislikes": "burpees",
    "coachingStylePreference": "encouraging",
    "motivationStyle": "celebrate small wins",
    "successMetrics": "weight and energy levels",
    "progressTrackingPreferences": "weekly check-ins",
}


@pytest.fixture
def mock_config():
    """Patch the config singleton with test-friendly values."""
    test_config = {
        "extractor_model": "claude-test-haiku",
        "questioner_model": "claude-test-sonnet",
        "builder_model": "claude-test-sonnet",
        "llm_max_retries": 0,
        "llm_temperature_structured": 0,
        "llm_temperature_creative": 0.7,
        "history_step_size": 10,
        "history_min_threshold": 12,
        "history_max_replayed": 40,
        "merge_policy": "overwrite",
        "generation_lease_seconds": None,
        "build_target": "build-coach-config",
        "store_path": "./sessions",
        "dispatch_url": None,
        "stream_chunk_words": 1,
    }
    with patch("coach_intake.config._config", test_config):
        yield test_config


@pytest.fixture
def empty_todo():
    return create_empty_todo_list()


def _complete_item(value, turn: int = 1) -> dict:
    return {"status": "complete", "value": value, "confidence": "high", "provenance": turn}


@pytest.fixture
def complete_todo():
    """All 20 required fields complete, both optional fields still pending."""
    todo = create_empty_todo_list()
    for key, value in REQUIRED_VALUES.items():
        todo[key] = _complete_item(value)
    return todo


@pytest.fixture
def base_session(empty_todo):
    return create_session("user-1", empty_todo, session_id="intake_test")


@pytest.fixture
def complete_session(complete_todo):
    """A session whose intake just finished; the build has not started."""
    session = create_session("user-1", complete_todo, session_id="intake_done")
    session["isComplete"] = True
    session["history"] = [
        {"role": "assistant", "text": "Hey! What are your goals?", "timestamp": "2026-01-01T10:00:00+00:00"},
        {"role": "user", "text": "I want to lose weight", "timestamp": "2026-01-01T10:00:05+00:00"},
    ]
    return session


@pytest.fixture
def memory_store():
    return InMemorySessionStore()


@pytest.fixture
def mock_dispatcher():
    dispatcher = MagicMock()
    dispatcher.invoke = AsyncMock(return_value=None)
    return dispatcher


@pytest.fixture
def valid_artifact():
    """Structurally complete artifact as the builder model would return it."""
    return {
        "coach_id": "user_user-1_coach_1",
        "coach_name": "Emma_Your_Strength_Guide",
        "coach_description": "Beginner-Friendly Strength Guide",
        "selected_personality": {
            "primary_template": "emma",
            "secondary_influences": ["alex"],
            "selection_reasoning": "Beginner who needs encouragement.",
        },
        "selected_methodology": {
            "primary_methodology": "functional_bodybuilding",
            "methodology_reasoning": "Movement quality first.",
        },
        "technical_config": {
            "experience_level": "beginner",
            "training_frequency": 3,
            "injury_considerations": ["bad knees"],
            "safety_constraints": {
                "volume_progression_limit": "10%_weekly",
                "contraindicated_exercises": ["deep squats"],
            },
        },
        "generated_prompts": {
            "personality_prompt": "You are Emma, an encouraging coach...",
            "safety_integrated_prompt": "Always protect the knees...",
        },
    }


@pytest.fixture
def all_required_updates():
    """Extraction result that fills every required field in one answer."""
    return {key: {"value": value, "confidence": "high"} for key, value in REQUIRED_VALUES.items()}
