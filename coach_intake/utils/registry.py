"""Field registry: the fixed, ordered schema of intake fields.

Each field carries the tag of its value variant (``kind``) and the priority
group the question generator uses when picking what to ask next:

1. identity / preference that shapes later phrasing
2. goals and experience
3. logistics (frequency, time, equipment)
4. safety (injuries, limitations)
5. style and motivation
6. optional extras (competition)
"""

import re
from types import MappingProxyType
from typing import Literal, NamedTuple

FieldKind = Literal["text", "number", "list", "choice"]

_NONE_RE = re.compile(
    r"^(?:none|nothing|nope|n/?a|no)"
    r"(?:\s+(?:real|current|major|known|significant|serious))?"
    r"(?:\s+(?:injur(?:y|ies)|limitations?|restrictions?|issues?|problems?|plans?|pain|concerns?))?"
    r"(?:\s+at all)?\W*$"
)


class Field(NamedTuple):
    key: str
    label: str
    required: bool
    kind: FieldKind
    priority: int
    choices: tuple[str, ...] = ()
    bounds: tuple[float, float] | None = None


FIELDS: tuple[Field, ...] = (
    Field("coachGenderPreference", "Coach Gender Preference", True, "choice", 1,
          choices=("male", "female", "neutral")),
    Field("primaryGoals", "Primary Fitness Goals", True, "text", 2),
    Field("goalTimeline", "Goal Timeline", True, "text", 2),
    Field("age", "Age", True, "number", 2, bounds=(10, 100)),
    Field("lifeStageContext", "Life Stage Context", True, "text", 2),
    Field("experienceLevel", "Experience Level", True, "choice", 2,
          choices=("beginner", "intermediate", "advanced")),
    Field("trainingHistory", "Training History", True, "text", 2),
    Field("trainingFrequency", "Training Frequency", True, "number", 3, bounds=(1, 7)),
    Field("sessionDuration", "Session Duration", True, "text", 3),
    Field("timeOfDayPreference", "Time of Day Preference", True, "text", 3),
    Field("injuryConsiderations", "Injury Considerations", True, "text", 4),
    Field("movementLimitations", "Movement Limitations", True, "text", 4),
    Field("equipmentAccess", "Equipment Access", True, "list", 3),
    Field("trainingEnvironment", "Training Environment", True, "text", 3),
    Field("movementPreferences", "Movement Preferences", True, "text", 5),
    Field("movementDislikes", "Movement Dislikes", True, "text", 5),
    Field("coachingStylePreference", "Coaching Style Preference", True, "text", 5),
    Field("motivationStyle", "Motivation Style", True, "text", 5),
    Field("successMetrics", "Success Metrics", True, "text", 5),
    Field("progressTrackingPreferences", "Progress Tracking Preferences", True, "text", 5),
    Field("competitionGoals", "Competition Goals", False, "text", 6),
    Field("competitionTimeline", "Competition Timeline", False, "text", 6),
)

FIELDS_BY_KEY = MappingProxyType({f.key: f for f in FIELDS})
FIELD_KEYS: tuple[str, ...] = tuple(f.key for f in FIELDS)
REQUIRED_FIELDS: tuple[str, ...] = tuple(f.key for f in FIELDS if f.required)
OPTIONAL_FIELDS: tuple[str, ...] = tuple(f.key for f in FIELDS if not f.required)


def get_field(key: str) -> Field:
    """Return the registry entry for key. Raises KeyError for unknown keys."""
    return FIELDS_BY_KEY[key]


def field_label(key: str) -> str:
    return FIELDS_BY_KEY[key].label


def is_required_field(key: str) -> bool:
    field = FIELDS_BY_KEY.get(key)
    return bool(field and field.required)


def is_none_value(value) -> bool:
    """True for explicit "none"-style answers ("no injuries" is valid data, not missing data)."""
    if isinstance(value, str):
        text = value.strip().lower()
        return bool(_NONE_RE.match(text))
    if isinstance(value, list):
        return all(is_none_value(v) for v in value)
    return False


def _coerce_number(field: Field, raw):
    if isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        text = raw.strip()
        try:
            raw = float(text) if "." in text else int(text)
        except ValueError:
            return None
    if not isinstance(raw, (int, float)):
        return None
    if field.bounds and not (field.bounds[0] <= raw <= field.bounds[1]):
        return None
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    return raw


def _coerce_list(raw):
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, list):
        return None
    items = [str(item).strip() for item in raw if item is not None and str(item).strip()]
    return items or None


def coerce_value(field: Field, raw):
    """Validate raw against the field's variant tag.

    Returns the normalized value, or None when the value does not fit the
    field (the update is then dropped at the extraction boundary).
    """
    if raw is None:
        return None

    if field.kind == "number":
        return _coerce_number(field, raw)

    if field.kind == "list":
        return _coerce_list(raw)

    if field.kind == "choice":
        if not isinstance(raw, str):
            return None
        choice = raw.strip().lower()
        return choice if choice in field.choices else None

    # text
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return str(raw)
    if isinstance(raw, list):
        raw = ", ".join(str(item).strip() for item in raw if str(item).strip())
    if not isinstance(raw, str) or not raw.strip():
        return None
    return raw.strip()
