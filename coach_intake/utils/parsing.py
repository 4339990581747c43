"""Shared parsing and LLM utilities for agent responses."""

import json
import re
import sys

import httpx
from json_repair import repair_json
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)


def strip_fences(text: str) -> str:
    """Strip markdown code fences from LLM output if present."""
    match = _FENCE_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def strip_non_json(text: str) -> str:
    """Trim prose before the first '{' / '[' and after the last '}' / ']'."""
    cleaned = text.strip()
    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
    if not starts:
        return cleaned
    start = min(starts)
    end = max(cleaned.rfind("}"), cleaned.rfind("]"))
    if end < start:
        return cleaned
    return cleaned[start:end + 1]


def fix_double_encoded(data):
    """Recursively decode values that the LLM returned as JSON strings.

    Structured responses sometimes carry a nested object serialized a second
    time, e.g. {"age": "{\\"value\\": 34}"}. Strings that look like JSON
    objects or arrays are decoded; anything that fails to decode is kept.
    """
    if isinstance(data, str):
        stripped = data.strip()
        if stripped.startswith(("{", "[")):
            try:
                decoded = json.loads(stripped)
            except json.JSONDecodeError:
                return data
            return fix_double_encoded(decoded)
        return data
    if isinstance(data, dict):
        return {key: fix_double_encoded(value) for key, value in data.items()}
    if isinstance(data, list):
        return [fix_double_encoded(item) for item in data]
    return data


def parse_json_with_fallbacks(text: str):
    """Parse LLM output as JSON, repairing it if the strict parse fails.

    Order: strip fences, trim surrounding prose, json.loads, then
    json_repair. The result is passed through fix_double_encoded.
    Raises ValueError if nothing parseable remains.
    """
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Empty LLM response.")

    candidate = strip_non_json(strip_fences(text))
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        parsed = repair_json(candidate, return_objects=True)
        if parsed in ("", None) or not isinstance(parsed, (dict, list)):
            raise ValueError("LLM response is not valid JSON, even after repair.")
        print("[INTAKE] Warning: repaired malformed JSON in LLM response.", file=sys.stderr)

    return fix_double_encoded(parsed)


def content_text(content) -> str:
    """Flatten a chat message content (string or list of blocks) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return "" if content is None else str(content)


def _is_transient(exc: BaseException) -> bool:
    """Return True if the exception is a transient HTTP/network error worth retrying."""
    if isinstance(exc, httpx.TimeoutException):
        return True
    if isinstance(exc, httpx.ConnectError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in (429, 500, 502, 503)
    return False


def _max_retries(default: int) -> int:
    from coach_intake.config import get_config

    return get_config().get("llm_max_retries", default)


def _log_retry(retries: int):
    return lambda state: print(
        f"[INTAKE] Transient error: {state.outcome.exception()!r}. "
        f"Retrying in {state.next_action.sleep:.0f}s "
        f"(attempt {state.attempt_number}/{retries})...",
        file=sys.stderr,
    )


async def ainvoke_with_retry(llm, messages, max_retries: int = 3):
    """Await llm.ainvoke(messages) with exponential backoff on transient errors.

    Retries on HTTP 429/500/502/503, connection errors, and timeouts.
    Non-transient errors (auth failures, schema issues) are raised immediately.
    """
    retries = _max_retries(max_retries)

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(retries + 1),  # +1 because first attempt counts
        wait=wait_exponential(multiplier=1, min=2, max=16),
        retry=retry_if_exception(_is_transient),
        reraise=True,
        before_sleep=_log_retry(retries),
    ):
        with attempt:
            return await llm.ainvoke(messages)
