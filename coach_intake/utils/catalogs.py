"""Static catalogs: personality templates, methodologies, safety rules and phrasing tables.

Read once from catalogs.yaml and exposed as immutable tuples and mappings.
"""

from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import NamedTuple

import yaml

CATALOGS_PATH = Path(__file__).resolve().parent.parent / "catalogs.yaml"

LEVELS = ("unknown", "beginner", "intermediate", "advanced")


class PersonalityTemplate(NamedTuple):
    id: str
    name: str
    description: str
    primary_traits: tuple[str, ...]
    communication_style: str
    programming_approach: str
    motivation_style: str
    best_for: tuple[str, ...]


class MethodologyTemplate(NamedTuple):
    id: str
    name: str
    description: str
    programming_approach: str
    best_for: tuple[str, ...]
    strength_bias: str
    conditioning_approach: str


class SafetyRule(NamedTuple):
    id: str
    rule: str
    category: str
    severity: str


class CoherenceConflict(NamedTuple):
    primary: str
    trait: str
    penalty: int
    secondary: str | None = None
    methodology: str | None = None


class Catalogs(NamedTuple):
    personalities: tuple[PersonalityTemplate, ...]
    methodologies: tuple[MethodologyTemplate, ...]
    safety_rules: tuple[SafetyRule, ...]
    coherence_conflicts: tuple[CoherenceConflict, ...]
    sophistication_signals: MappingProxyType  # level -> tuple of lowercase phrases
    level_guidance: MappingProxyType
    fallback_questions: MappingProxyType  # field key -> {level: question}
    initial_greeting: str
    completion_fallback: str


def _freeze(value):
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    return value


def _records(cls, rows: list[dict]) -> tuple:
    return tuple(cls(**{k: _freeze(v) for k, v in row.items()}) for row in rows)


@lru_cache(maxsize=1)
def load_catalogs() -> Catalogs:
    """Load and freeze catalogs.yaml. Cached for the life of the process."""
    raw = yaml.safe_load(CATALOGS_PATH.read_text())

    signals = {
        level: tuple(phrase.lower() for phrase in raw["sophistication_signals"].get(level, []))
        for level in LEVELS
        if level != "unknown"
    }

    return Catalogs(
        personalities=_records(PersonalityTemplate, raw["personalities"]),
        methodologies=_records(MethodologyTemplate, raw["methodologies"]),
        safety_rules=_records(SafetyRule, raw["safety_rules"]),
        coherence_conflicts=_records(CoherenceConflict, raw["coherence_conflicts"]),
        sophistication_signals=MappingProxyType(signals),
        level_guidance=_freeze(raw["level_guidance"]),
        fallback_questions=_freeze(raw["fallback_questions"]),
        initial_greeting=raw["initial_greeting"].strip(),
        completion_fallback=raw["completion_fallback"].strip(),
    )


def critical_safety_rules() -> tuple[SafetyRule, ...]:
    """Only the highest-severity rules are embedded in generation prompts."""
    return tuple(rule for rule in load_catalogs().safety_rules if rule.severity == "critical")
