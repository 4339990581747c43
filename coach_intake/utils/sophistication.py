"""Sophistication assessor: tracks the user's experience tier.

Two sources feed the level:

* keyword signals scanned against raw user text, used only while the level
  is still ``unknown``;
* an explicit ``SOPHISTICATION_LEVEL: <LEVEL>`` tag the assistant appends to
  each generated turn, which replaces the stored level outright.
"""

import re

from coach_intake.utils.catalogs import LEVELS, load_catalogs

TAG_MARKER = "SOPHISTICATION_LEVEL"
TAG_RE = re.compile(r"\s*SOPHISTICATION_LEVEL:\s*(BEGINNER|INTERMEDIATE|ADVANCED)\b")

_TIERS = ("beginner", "intermediate", "advanced")  # Lowest first; ties resolve here.


def score_signals(text: str) -> dict[str, int]:
    """Count catalog phrases per tier found in text."""
    lowered = (text or "").lower()
    signals = load_catalogs().sophistication_signals
    return {tier: sum(1 for phrase in signals[tier] if phrase in lowered) for tier in _TIERS}


def assess_keywords(text: str) -> str | None:
    """Return the tier with the most signal hits, or None when nothing fires."""
    scores = score_signals(text)
    best = max(scores.values())
    if best == 0:
        return None
    return next(tier for tier in _TIERS if scores[tier] == best)


def extract_sophistication_tag(text: str) -> str | None:
    """Return the level named by the last tag in text, lowercased."""
    matches = TAG_RE.findall(text or "")
    return matches[-1].lower() if matches else None


def strip_sophistication_tag(text: str) -> str:
    return TAG_RE.sub("", text or "").strip()


def update_level(current: str, user_text: str = "", assistant_text: str = "") -> str:
    """Compute the new level after a turn.

    A tag in the assistant text wins in either direction. Keyword signals
    from the user only promote an ``unknown`` level.
    """
    if current not in LEVELS:
        raise ValueError(f"Unknown sophistication level {current!r}.")

    tagged = extract_sophistication_tag(assistant_text)
    if tagged:
        return tagged

    if current == "unknown":
        return assess_keywords(user_text) or "unknown"
    return current


def level_guidance(level: str) -> str:
    guidance = load_catalogs().level_guidance
    return guidance.get(level, guidance["unknown"])
