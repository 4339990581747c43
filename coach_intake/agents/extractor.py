"""Extractor Agent: turns a free-form user answer into partial field updates.

Calls the configured extraction model with a JSON schema built from the
field registry, then validates every returned field against the registry
before anything reaches the merge engine. Extraction never fails a turn:
transport errors, malformed output and empty results all degrade to an
empty update set.
"""

import sys

from coach_intake.errors import ExtractionParseError
from coach_intake.state import ConversationTurn, FieldUpdate, TodoItem
from coach_intake.utils.llm import complete_structured
from coach_intake.utils.parsing import fix_double_encoded, parse_json_with_fallbacks
from coach_intake.utils.registry import FIELDS, FIELDS_BY_KEY, coerce_value
from coach_intake.utils.todo_list import EXTRACTED_CONFIDENCES, OverwritePolicy, merge_updates, normalize_confidence
from coach_intake.utils.validator import validate_input

# Hints shown to the model next to each field key.
FIELD_HINTS = {
    "coachGenderPreference": '"male" | "female" | "neutral"',
    "primaryGoals": "string describing their fitness goals",
    "goalTimeline": 'timeframe for achieving goals (e.g., "6 months", "1 year")',
    "age": "number (their age)",
    "lifeStageContext": 'context about life stage (e.g., "parent of young kids", "retired")',
    "experienceLevel": '"beginner" | "intermediate" | "advanced"',
    "trainingHistory": "description of their training background",
    "trainingFrequency": "number of days per week (1-7)",
    "sessionDuration": 'typical workout length (e.g., "45 minutes")',
    "timeOfDayPreference": 'when they prefer to train (e.g., "morning", "flexible")',
    "injuryConsiderations": 'description of injuries or "none"',
    "movementLimitations": 'description of movement restrictions or "none"',
    "equipmentAccess": 'array of equipment (e.g., ["barbell", "pull-up bar"])',
    "trainingEnvironment": 'where they train (e.g., "CrossFit gym", "home garage")',
    "movementPreferences": "movements they enjoy",
    "movementDislikes": "movements they dislike",
    "coachingStylePreference": "description of coaching style they want",
    "motivationStyle": "how they want to be motivated",
    "successMetrics": "how they measure success",
    "progressTrackingPreferences": "how they want to track progress",
    "competitionGoals": 'competition plans or "none"',
    "competitionTimeline": "when they plan to compete",
}

_JSON_TYPES = {"text": "string", "number": "number", "choice": "string"}


def _value_schema(field) -> dict:
    if field.kind == "list":
        return {"type": "array", "items": {"type": "string"}}
    schema = {"type": _JSON_TYPES[field.kind]}
    if field.choices:
        schema["enum"] = list(field.choices)
    return schema


def build_extraction_schema() -> dict:
    """JSON schema with one optional {value, confidence} object per registry field."""
    properties = {
        field.key: {
            "type": "object",
            "description": FIELD_HINTS.get(field.key, field.label),
            "properties": {
                "value": _value_schema(field),
                "confidence": {"type": "string", "enum": list(EXTRACTED_CONFIDENCES)},
            },
            "required": ["value"],
        }
        for field in FIELDS
    }
    return {
        "title": "extract_coach_intake_info",
        "description": "Fitness coach intake information found in the user's response.",
        "type": "object",
        "properties": properties,
        "additionalProperties": False,
    }


EXTRACTION_SCHEMA = build_extraction_schema()

SYSTEM_PROMPT = """\
You are an expert at extracting structured fitness intake information from conversational responses.

WHAT WE'VE ALREADY COLLECTED:
{collected}

WHAT WE STILL NEED:
{pending}

AVAILABLE FIELDS (only include a field if you find information for it):
{fields}

EXTRACTION RULES:
1. ONLY extract information that is clearly stated or strongly implied.
2. Set confidence to "high" if explicitly stated, "medium" if implied, "low" if uncertain.
3. "None" or "no" answers ARE valid data, not missing data (e.g. value "none" for no injuries).
4. Extract specific details when mentioned. Don't make assumptions beyond what's stated.
5. Return ONLY the fields you found. Omit everything else.
"""


def _build_system_prompt(todo_list: dict[str, TodoItem]) -> str:
    collected = [f.key for f in FIELDS if todo_list[f.key]["status"] == "complete"]
    pending = [f.key for f in FIELDS if todo_list[f.key]["status"] != "complete"]
    fields = "\n".join(
        f"- {f.key}: {FIELD_HINTS.get(f.key, f.label)}" + ("" if f.required else " (OPTIONAL)")
        for f in FIELDS
    )
    return SYSTEM_PROMPT.format(
        collected=", ".join(collected) or "Nothing yet",
        pending=", ".join(pending) or "Nothing",
        fields=fields,
    )


def _build_user_prompt(user_text: str, history: list[ConversationTurn]) -> str:
    context = "\n".join(f"{turn['role'].upper()}: {turn['text']}" for turn in history)
    return (
        f"## Conversation History\n{context or '(none)'}\n\n"
        f'## Current User Response\n"{user_text}"\n\n'
        "Extract any fitness coach intake information from the current response."
    )


def parse_extraction(raw) -> dict[str, FieldUpdate]:
    """Validate a raw extraction result into field updates.

    Accepts a dict (structured output) or a string (free text that should
    contain JSON). Unknown keys, malformed items and values that do not fit
    the field's type are dropped.
    Raises ExtractionParseError if the result is not a JSON object.
    """
    if isinstance(raw, str):
        try:
            data = parse_json_with_fallbacks(raw)
        except ValueError as e:
            raise ExtractionParseError(str(e)) from e
    else:
        data = fix_double_encoded(raw)

    if not isinstance(data, dict):
        raise ExtractionParseError(f"Extraction result is {type(data).__name__}, expected an object.")

    updates: dict[str, FieldUpdate] = {}
    for key, item in data.items():
        field = FIELDS_BY_KEY.get(key)
        if field is None or not isinstance(item, dict):
            continue
        value = coerce_value(field, item.get("value"))
        if value is None:
            if item.get("value") is not None:
                print(f"[INTAKE] Warning: dropped invalid value for '{key}': {item.get('value')!r}", file=sys.stderr)
            continue
        updates[key] = {"value": value, "confidence": normalize_confidence(item.get("confidence"))}

    return updates


async def extract_updates(
    user_text: str,
    history: list[ConversationTurn],
    todo_list: dict[str, TodoItem],
) -> dict[str, FieldUpdate]:
    """Extract field updates from user_text. Returns {} on any failure."""
    user_text = validate_input(user_text)

    try:
        raw = await complete_structured(
            _build_system_prompt(todo_list),
            _build_user_prompt(user_text, history),
            role="extractor",
            schema=EXTRACTION_SCHEMA,
        )
        updates = parse_extraction(raw)
    except Exception as e:
        print(f"[INTAKE] Extraction failed, keeping to-do list unchanged: {e!r}", file=sys.stderr)
        return {}

    if updates:
        print(f"[INTAKE] Extracted {len(updates)} field(s): {', '.join(updates)}", file=sys.stderr)
    return updates


async def extract_and_merge(
    user_text: str,
    history: list[ConversationTurn],
    todo_list: dict[str, TodoItem],
    turn_index: int,
    policy: OverwritePolicy | None = None,
) -> dict[str, TodoItem]:
    """Extract updates and return the merged to-do list (unchanged on failure)."""
    updates = await extract_updates(user_text, history, todo_list)
    return merge_updates(todo_list, updates, turn_index, policy=policy)
