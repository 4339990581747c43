"""Builder Agent: turns a completed intake session into a coach config artifact.

run_build() is the dispatch target. It owns the write-back of the build's
outcome: ``complete`` with the artifact id on success, ``failed`` with the
error otherwise, so the next completion signal can retry.
"""

import json
import re
import sys
import time

from coach_intake.controller import create_generation_failure, create_generation_success
from coach_intake.errors import ArtifactStructuralError, SessionNotFoundError
from coach_intake.state import Session, TodoItem, generation_status, now_iso
from coach_intake.store import SessionStore
from coach_intake.utils.artifact_checks import check_coherence, check_safety, check_structure
from coach_intake.utils.catalogs import critical_safety_rules, load_catalogs
from coach_intake.utils.llm import complete
from coach_intake.utils.parsing import parse_json_with_fallbacks
from coach_intake.utils.registry import FIELDS, is_none_value
from coach_intake.utils.todo_list import collected_values

SUMMARY_MAX_CHARS = 1000
DEFAULT_FREQUENCY = 4
DEFAULT_GENDER = "neutral"
DEFAULT_TIMELINE = "6 months"
ARTIFACT_MAX_TOKENS = 8192

_SPLIT_RE = re.compile(r"\s*(?:,|;|\band\b)\s*")


# --- Profile derivation from the collected to-do list ---

def _value(todo_list: dict[str, TodoItem], key: str):
    item = todo_list.get(key) or {}
    return item.get("value") if item.get("status") == "complete" else None


def _as_items(value) -> list[str]:
    if value is None or is_none_value(value):
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip() and not is_none_value(v)]
    return [part for part in _SPLIT_RE.split(str(value)) if part]


def training_frequency_from(todo_list: dict[str, TodoItem]) -> int:
    value = _value(todo_list, "trainingFrequency")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, (int, float)) and not isinstance(value, bool) and 1 <= value <= 7:
        return int(value)
    return DEFAULT_FREQUENCY


def gender_preference_from(todo_list: dict[str, TodoItem]) -> str:
    value = _value(todo_list, "coachGenderPreference")
    if isinstance(value, str) and value.lower() in ("male", "female", "neutral"):
        return value.lower()
    return DEFAULT_GENDER


def goal_timeline_from(todo_list: dict[str, TodoItem]) -> str:
    value = _value(todo_list, "goalTimeline")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return DEFAULT_TIMELINE


def derive_safety_profile(todo_list: dict[str, TodoItem], level: str = "unknown") -> dict:
    """Risk factors the artifact has to mitigate, derived from collected answers."""
    return {
        "injuries": _as_items(_value(todo_list, "injuryConsiderations")),
        "contraindications": _as_items(_value(todo_list, "movementLimitations")),
        "equipment": _as_items(_value(todo_list, "equipmentAccess")) or ["basic"],
        "time_constraints": {
            "session_duration": _value(todo_list, "sessionDuration"),
            "time_of_day": _value(todo_list, "timeOfDayPreference"),
        },
        "experience_level": level,
    }


def session_summary(session: Session) -> str:
    """One-line summary of the intake for the artifact metadata."""
    responses = " | ".join(turn["text"] for turn in session["history"] if turn["role"] == "user")
    if not responses:
        responses = "No responses"
    elif len(responses) > SUMMARY_MAX_CHARS:
        responses = responses[:SUMMARY_MAX_CHARS] + "..."
    level = session.get("sophisticationLevel", "unknown")
    return f"User {session['userId']} completed coach creator as {level} level athlete. Responses: {responses}"


def new_artifact_id(user_id: str) -> str:
    return f"user_{user_id}_coach_{int(time.time() * 1000)}"


# --- Prompt ---

SYSTEM_PROMPT = """\
You are an expert coach creator generating a comprehensive AI coach configuration. Your goal is \
to create a highly personalized coach that matches this user's needs, goals and constraints.

USER PROFILE:
{profile}

USER SOPHISTICATION: {level}

SAFETY PROFILE:
{safety_profile}

AVAILABLE COACH PERSONALITIES:
{personalities}

AVAILABLE METHODOLOGIES:
{methodologies}

CRITICAL SAFETY RULES TO INTEGRATE:
{safety_rules}

Select the MOST APPROPRIATE personality template and methodology for THIS user. \
Do not just use defaults.

You MUST respond with valid JSON matching this structure:
{{
  "coach_id": "{artifact_id}",
  "coach_name": "string (creative, under 25 characters, includes the personality name)",
  "coach_description": "string (3-5 words describing the coach's specialty)",
  "selected_personality": {{
    "primary_template": "one of: {personality_ids}",
    "secondary_influences": ["template id"],
    "selection_reasoning": "string"
  }},
  "selected_methodology": {{
    "primary_methodology": "one of: {methodology_ids}",
    "methodology_reasoning": "string",
    "programming_emphasis": "strength | conditioning | balanced",
    "periodization_approach": "linear | conjugate | block | daily_undulating"
  }},
  "technical_config": {{
    "experience_level": "{level}",
    "training_frequency": {frequency},
    "goal_timeline": "{timeline}",
    "injury_considerations": ["string"],
    "equipment_available": ["string"],
    "safety_constraints": {{
      "volume_progression_limit": "{progression_limit}",
      "contraindicated_exercises": ["string"],
      "required_modifications": ["string"],
      "safety_monitoring": {critical_rule_ids}
    }}
  }},
  "generated_prompts": {{
    "personality_prompt": "complete, ready-to-use system prompt for the coach",
    "safety_integrated_prompt": "string",
    "motivation_prompt": "string",
    "methodology_prompt": "string",
    "communication_style": "string"
  }}
}}

Rules:
- Every generated prompt must reference specific details from the user's answers.
- Safety constraints must cover every injury and limitation in the safety profile.
- Coach gender preference: {gender}.
- Respond ONLY with the JSON object. No markdown fences, no commentary.
"""


def _format_value(value) -> str:
    return ", ".join(value) if isinstance(value, list) else str(value)


def build_artifact_prompt(session: Session, artifact_id: str) -> tuple[str, str]:
    """Return (system_prompt, user_prompt) for generating the artifact."""
    catalogs = load_catalogs()
    todo_list = session["todoList"]
    level = session.get("sophisticationLevel", "unknown")
    values = collected_values(todo_list)
    profile = "\n".join(
        f"- {field.label}: {_format_value(values[field.key])}" for field in FIELDS if field.key in values
    )
    personalities = "\n\n".join(
        f"{p.id.upper()}: {p.name}\n  Description: {p.description}\n"
        f"  Best for: {', '.join(p.best_for)}\n  Communication Style: {p.communication_style}\n"
        f"  Programming Approach: {p.programming_approach}\n  Motivation Style: {p.motivation_style}"
        for p in catalogs.personalities
    )
    methodologies = "\n\n".join(
        f"{m.id.upper()}: {m.name}\n  Description: {m.description}\n"
        f"  Best for: {', '.join(m.best_for)}\n  Programming Approach: {m.programming_approach}\n"
        f"  Strength Focus: {m.strength_bias}\n  Conditioning: {m.conditioning_approach}"
        for m in catalogs.methodologies
    )
    rules = critical_safety_rules()

    system_prompt = SYSTEM_PROMPT.format(
        profile=profile or "(nothing collected)",
        level=level,
        safety_profile=json.dumps(derive_safety_profile(todo_list, level), indent=2),
        personalities=personalities,
        methodologies=methodologies,
        safety_rules="\n".join(f"- {r.rule} ({r.category})" for r in rules),
        artifact_id=artifact_id,
        personality_ids=" | ".join(p.id for p in catalogs.personalities),
        methodology_ids=" | ".join(m.id for m in catalogs.methodologies),
        frequency=training_frequency_from(todo_list),
        timeline=goal_timeline_from(todo_list),
        progression_limit="10%_weekly" if level == "beginner" else "5%_weekly",
        critical_rule_ids=json.dumps([r.id for r in rules]),
        gender=gender_preference_from(todo_list),
    )
    user_prompt = (
        f"Generate my comprehensive coach configuration. I am a {level} level user who answered "
        f"{sum(1 for t in session['history'] if t['role'] == 'user')} questions. "
        "Create a coach that matches my specific needs and goals."
    )
    return system_prompt, user_prompt


def _fill_defaults(artifact: dict) -> None:
    """Default the optional sections so downstream readers can rely on their shape."""
    artifact.setdefault("coach_description", "")
    personality = artifact.setdefault("selected_personality", {})
    personality.setdefault("secondary_influences", [])
    technical = artifact.setdefault("technical_config", {})
    technical.setdefault("injury_considerations", [])
    technical.setdefault("safety_constraints", {})
    prompts = artifact.setdefault("generated_prompts", {})
    for key in ("safety_integrated_prompt", "motivation_prompt", "methodology_prompt", "communication_style"):
        prompts.setdefault(key, "")
    artifact.setdefault("metadata", {})


async def generate_artifact(session: Session, created_at: str | None = None) -> dict:
    """Generate and validate the artifact for a completed session.

    Raises ArtifactStructuralError if the model output is unparseable or
    misses required fields. Safety and coherence findings are attached
    under artifact["validation"].
    """
    created_at = created_at or now_iso()
    artifact_id = new_artifact_id(session["userId"])
    system_prompt, user_prompt = build_artifact_prompt(session, artifact_id)

    raw = await complete(system_prompt, user_prompt, role="builder", max_tokens=ARTIFACT_MAX_TOKENS)
    try:
        artifact = parse_json_with_fallbacks(raw)
    except ValueError as e:
        raise ArtifactStructuralError(f"Invalid JSON response: {e}") from e

    check_structure(artifact)
    _fill_defaults(artifact)

    level = session.get("sophisticationLevel", "unknown")
    safety_profile = derive_safety_profile(session["todoList"], level)
    safety = check_safety(artifact, safety_profile)
    coherence = check_coherence(artifact)
    if not safety["approved"]:
        print(f"[INTAKE] Warning: safety validation issues: {[w['message'] for w in safety['warnings']]}", file=sys.stderr)
    if coherence["score"] < 7:
        print(f"[INTAKE] Warning: coherence issues: {[w['message'] for w in coherence['warnings']]}", file=sys.stderr)

    artifact["validation"] = {"safety": safety, "coherence": coherence}
    artifact["metadata"].update({
        "version": "1.0",
        "created_date": created_at,
        "generation_timestamp": now_iso(),
        "session_id": session["sessionId"],
        "safety_profile": safety_profile,
        "coach_creator_session_summary": session_summary(session),
    })
    return artifact


async def run_build(payload: dict, store: SessionStore) -> dict:
    """Dispatch target: build the artifact for payload's session and record the outcome."""
    user_id, session_id = payload["user_id"], payload["session_id"]
    session = await store.get(user_id, session_id)
    if session is None:
        raise SessionNotFoundError(f"Session {session_id} not found for user {user_id}.")

    if generation_status(session) != "in_progress":
        print(
            f"[INTAKE] Warning: build for session {session_id} skipped, "
            f"status is '{generation_status(session)}' not 'in_progress'.",
            file=sys.stderr,
        )
        return {"status": "skipped"}

    print(f"[INTAKE] Building coach config for session {session_id}...", file=sys.stderr)
    try:
        if not session.get("isComplete"):
            raise ValueError("Session is not complete.")
        artifact = await generate_artifact(session)
        await store.save_artifact(user_id, artifact)
        done = create_generation_success(session, artifact["coach_id"])
        done["isDeleted"] = True
        await store.put(done, expected_status="in_progress")
    except Exception as e:
        print(f"[INTAKE] Build failed for session {session_id}: {e!r}", file=sys.stderr)
        try:
            await store.put(create_generation_failure(session, e), expected_status="in_progress")
        except Exception as write_error:
            print(f"[INTAKE] Failed to record build failure for {session_id}: {write_error!r}", file=sys.stderr)
        return {"status": "failed", "error": str(e) or type(e).__name__}

    print(f"[INTAKE] Coach config {artifact['coach_id']} built for session {session_id}.", file=sys.stderr)
    return {"status": "complete", "artifact_id": artifact["coach_id"]}
