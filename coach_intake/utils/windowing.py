"""Stepped history window for replaying conversation history to the LLM.

The cached prefix grows in whole steps so the same prefix is reused across
several turns before it moves:

    n < 12      -> no cached prefix
    12 .. 21    -> first 10 messages cached
    22 .. 31    -> first 20 messages cached
    ...

The newest two messages are never part of the cached prefix. With a
``max_replayed`` ceiling the window start also advances in whole steps.
"""

import math
import sys
from typing import NamedTuple

CACHE_CONTROL = {"type": "ephemeral"}
OPENING_USER_TURN = "Hi, I want to set up my coach."


class HistoryWindow(NamedTuple):
    start: int  # First replayed message.
    boundary: int  # Messages [start, boundary) form the cached prefix.
    end: int

    @property
    def cached_count(self) -> int:
        return self.boundary - self.start

    @property
    def dynamic_count(self) -> int:
        return self.end - self.boundary


def plan_history_window(
    n_messages: int,
    step: int = 10,
    min_threshold: int = 12,
    max_replayed: int | None = None,
) -> HistoryWindow:
    """Plan which slice of n_messages to replay and where the cache boundary sits."""
    if n_messages < 0:
        raise ValueError("n_messages must be non-negative.")
    if step <= 0:
        raise ValueError("step must be positive.")
    if max_replayed is not None and max_replayed < step:
        raise ValueError("max_replayed must be at least one step.")

    start = 0
    if max_replayed is not None and n_messages > max_replayed:
        start = math.ceil((n_messages - max_replayed) / step) * step

    if n_messages < min_threshold:
        return HistoryWindow(start, start, n_messages)

    boundary = (n_messages - 2) // step * step
    return HistoryWindow(start, max(start, boundary), n_messages)


def window_from_config(n_messages: int) -> HistoryWindow:
    from coach_intake.config import get_config

    config = get_config()
    return plan_history_window(
        n_messages,
        step=config.get("history_step_size", 10),
        min_threshold=config.get("history_min_threshold", 12),
        max_replayed=config.get("history_max_replayed"),
    )


def build_history_messages(history: list[dict], window: HistoryWindow, cache_marker: bool = True) -> list[dict]:
    """Turn the windowed history into chat messages.

    When cache_marker is set and the window has a cached prefix, the last
    cached message carries an Anthropic cache_control block.
    """
    messages = []
    for index in range(window.start, window.end):
        turn = history[index]
        content = turn["text"]
        if cache_marker and window.cached_count and index == window.boundary - 1:
            content = [{"type": "text", "text": content, "cache_control": dict(CACHE_CONTROL)}]
        messages.append({"role": turn["role"], "content": content})

    if messages and messages[0]["role"] == "assistant":
        # Chat APIs expect the conversation to open with a user turn.
        messages.insert(0, {"role": "user", "content": OPENING_USER_TURN})

    if window.cached_count:
        print(
            f"[INTAKE] History window {window.start}-{window.end}, "
            f"cache boundary at {window.boundary}.",
            file=sys.stderr,
        )
    return messages
