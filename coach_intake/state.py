"""Intake state: session records, to-do items and the per-turn graph state.

Everything here is plain JSON-compatible data. Timestamps are ISO-8601 UTC
strings with microsecond precision so a session survives a JSON round trip
unchanged.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Literal, NotRequired, TypedDict

ItemStatus = Literal["pending", "in_progress", "complete"]
Confidence = Literal["high", "medium", "low", "unset"]
SophisticationLevel = Literal["unknown", "beginner", "intermediate", "advanced"]
GenerationStatus = Literal["not_started", "in_progress", "complete", "failed"]
Role = Literal["user", "assistant"]

FieldValue = str | int | float | list[str] | None

VALID_ITEM_STATUSES = {"pending", "in_progress", "complete"}
VALID_CONFIDENCES = {"high", "medium", "low", "unset"}
VALID_LEVELS = {"unknown", "beginner", "intermediate", "advanced"}
VALID_GENERATION_STATUSES = {"not_started", "in_progress", "complete", "failed"}
VALID_ROLES = {"user", "assistant"}


class TodoItem(TypedDict):
    status: ItemStatus
    value: FieldValue
    confidence: Confidence
    provenance: int | None  # Turn index the value was extracted from.


class FieldUpdate(TypedDict):
    value: FieldValue
    confidence: NotRequired[Confidence]


class ConversationTurn(TypedDict):
    role: Role
    text: str
    timestamp: str


class GenerationState(TypedDict):
    status: GenerationStatus
    startedAt: NotRequired[str]
    completedAt: NotRequired[str]
    failedAt: NotRequired[str]
    error: NotRequired[str]
    artifactId: NotRequired[str]


class Session(TypedDict):
    userId: str
    sessionId: str
    todoList: dict[str, TodoItem]
    history: list[ConversationTurn]
    sophisticationLevel: SophisticationLevel
    isComplete: bool
    configGeneration: GenerationState
    startedAt: str
    lastActivity: str
    completedAt: NotRequired[str]
    isDeleted: NotRequired[bool]


class TurnState(TypedDict):
    session: Session  # Working copy, written back wholesale.
    user_text: str
    loaded_status: GenerationStatus  # configGeneration.status when the turn began.
    updates: dict[str, FieldUpdate]
    assistant_text: str
    raw_assistant_text: str
    is_complete: bool
    handoff: dict


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse a timestamp written by now_iso()."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_session_id() -> str:
    return f"intake_{uuid.uuid4().hex}"


def create_session(user_id: str, todo_list: dict, session_id: str | None = None) -> Session:
    """Create a fresh session with an untouched to-do list."""
    timestamp = now_iso()
    return {
        "userId": user_id,
        "sessionId": session_id or new_session_id(),
        "todoList": todo_list,
        "history": [],
        "sophisticationLevel": "unknown",
        "isComplete": False,
        "configGeneration": {"status": "not_started"},
        "startedAt": timestamp,
        "lastActivity": timestamp,
    }


def generation_status(session: Session) -> GenerationStatus:
    """Return configGeneration.status, treating a missing record as not_started."""
    return (session.get("configGeneration") or {}).get("status", "not_started")


def validate_session(data: dict) -> Session:
    """Validate the shape and enum values of a deserialized session.

    Raises ValueError on the first problem found.
    """
    for key in ("userId", "sessionId", "todoList", "history", "configGeneration"):
        if key not in data:
            raise ValueError(f"Session missing '{key}' field.")

    for field_key, item in data["todoList"].items():
        if item.get("status") not in VALID_ITEM_STATUSES:
            raise ValueError(f"Todo item '{field_key}' has invalid status {item.get('status')!r}.")
        if item.get("confidence", "unset") not in VALID_CONFIDENCES:
            raise ValueError(f"Todo item '{field_key}' has invalid confidence {item.get('confidence')!r}.")
        if (item["status"] == "complete") != (item.get("value") is not None):
            raise ValueError(f"Todo item '{field_key}' violates complete <=> value invariant.")

    for i, turn in enumerate(data["history"]):
        if turn.get("role") not in VALID_ROLES:
            raise ValueError(f"History turn {i} has invalid role {turn.get('role')!r}.")

    if data.get("sophisticationLevel", "unknown") not in VALID_LEVELS:
        raise ValueError(f"Invalid sophisticationLevel {data.get('sophisticationLevel')!r}.")
    if data["configGeneration"].get("status") not in VALID_GENERATION_STATUSES:
        raise ValueError(f"Invalid configGeneration status {data['configGeneration'].get('status')!r}.")

    return data  # type: ignore[return-value]


def session_to_json(session: Session) -> str:
    return json.dumps(session, sort_keys=True)


def session_from_json(text: str) -> Session:
    return validate_session(json.loads(text))
