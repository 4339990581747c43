"""To-do list model and merge engine.

Tracks which intake fields have been collected. Every registry key always
has exactly one item; items evolve but are never removed.
"""

import copy
from typing import Callable

from coach_intake.state import FieldUpdate, TodoItem
from coach_intake.utils.registry import (
    FIELDS,
    FIELD_KEYS,
    OPTIONAL_FIELDS,
    REQUIRED_FIELDS,
    field_label,
    is_required_field,
)

DEFAULT_CONFIDENCE = "medium"
EXTRACTED_CONFIDENCES = ("high", "medium", "low")

_CONFIDENCE_RANK = {"unset": 0, "low": 1, "medium": 2, "high": 3}

# Decides whether an incoming update may replace the existing item.
OverwritePolicy = Callable[[TodoItem, FieldUpdate], bool]


def normalize_confidence(confidence) -> str:
    """Map an extracted confidence onto high|medium|low, defaulting to medium."""
    if isinstance(confidence, str):
        confidence = confidence.strip().lower()
    return confidence if confidence in EXTRACTED_CONFIDENCES else DEFAULT_CONFIDENCE


def always_overwrite(existing: TodoItem, update: FieldUpdate) -> bool:
    """Newest extraction wins regardless of confidence."""
    return True


def prefer_higher_confidence(existing: TodoItem, update: FieldUpdate) -> bool:
    """Refuse to replace a collected value with a less confident one."""
    if existing["status"] != "complete":
        return True
    incoming = _CONFIDENCE_RANK[normalize_confidence(update.get("confidence"))]
    return incoming >= _CONFIDENCE_RANK.get(existing.get("confidence"), 0)


_POLICIES = {
    "overwrite": always_overwrite,
    "confidence": prefer_higher_confidence,
}


def policy_from_config() -> OverwritePolicy:
    """Return the overwrite policy named by the merge_policy config key."""
    from coach_intake.config import get_config

    name = get_config().get("merge_policy", "overwrite")
    if name not in _POLICIES:
        raise ValueError(f"Unknown merge_policy '{name}'. Must be one of: {set(_POLICIES)}")
    return _POLICIES[name]


def empty_item() -> TodoItem:
    return {"status": "pending", "value": None, "confidence": "unset", "provenance": None}


def create_empty_todo_list() -> dict[str, TodoItem]:
    """Create a dense to-do list with every field pending."""
    return {key: empty_item() for key in FIELD_KEYS}


def merge_updates(
    todo_list: dict[str, TodoItem],
    updates: dict[str, FieldUpdate],
    turn_index: int,
    policy: OverwritePolicy | None = None,
) -> dict[str, TodoItem]:
    """Apply extracted updates and return a new to-do list.

    Keys absent from updates, unknown keys and null values are ignored.
    The input list is never mutated, and applying the same updates twice
    for the same turn yields the same list.
    """
    policy = policy or always_overwrite
    merged = copy.deepcopy(todo_list)

    for key, update in updates.items():
        if key not in merged:
            continue
        value = update.get("value")
        if value is None:
            continue
        update = {**update, "confidence": normalize_confidence(update.get("confidence"))}
        if not policy(merged[key], update):
            continue
        merged[key] = {
            "status": "complete",
            "value": copy.deepcopy(value),
            "confidence": update["confidence"],
            "provenance": turn_index,
        }

    return merged


def is_todo_complete(todo_list: dict[str, TodoItem]) -> bool:
    """True when every required field is complete. Optional fields never matter."""
    return all(todo_list[key]["status"] == "complete" for key in REQUIRED_FIELDS)


def get_pending_items(todo_list: dict[str, TodoItem]) -> list[str]:
    return [key for key in FIELD_KEYS if todo_list[key]["status"] != "complete"]


def get_required_pending(todo_list: dict[str, TodoItem]) -> list[str]:
    return [key for key in REQUIRED_FIELDS if todo_list[key]["status"] != "complete"]


def next_missing_field(todo_list: dict[str, TodoItem]) -> str | None:
    """Pick the field to ask about next.

    Required fields are exhausted before optional ones; within each, lower
    priority groups come first and registry order breaks ties.
    """
    pending = [f for f in FIELDS if todo_list[f.key]["status"] != "complete"]
    if not pending:
        return None
    pending.sort(key=lambda f: (not f.required, f.priority, FIELD_KEYS.index(f.key)))
    return pending[0].key


def get_todo_progress(todo_list: dict[str, TodoItem]) -> dict:
    """Counts and percentages for all fields and for required fields."""
    completed = sum(1 for key in FIELD_KEYS if todo_list[key]["status"] == "complete")
    required_completed = sum(1 for key in REQUIRED_FIELDS if todo_list[key]["status"] == "complete")
    total = len(FIELD_KEYS)
    required_total = len(REQUIRED_FIELDS)
    return {
        "completed": completed,
        "total": total,
        "percentage": round(completed / total * 100),
        "required_completed": required_completed,
        "required_total": required_total,
        "required_percentage": round(required_completed / required_total * 100),
    }


def get_todo_summary(todo_list: dict[str, TodoItem]) -> dict[str, list[str]]:
    """Human-readable labels of what has been collected and what is missing."""
    summary = {"completed": [], "pending": [], "required_pending": [], "optional_pending": []}
    for key in FIELD_KEYS:
        label = field_label(key)
        if todo_list[key]["status"] == "complete":
            summary["completed"].append(label)
            continue
        summary["pending"].append(label)
        if is_required_field(key):
            summary["required_pending"].append(label)
        elif key in OPTIONAL_FIELDS:
            summary["optional_pending"].append(label)
    return summary


def collected_values(todo_list: dict[str, TodoItem]) -> dict:
    """Map of field key to value for every complete item."""
    return {
        key: todo_list[key]["value"]
        for key in FIELD_KEYS
        if todo_list[key]["status"] == "complete"
    }
