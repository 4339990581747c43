"""Questioner Agent: asks the next intake question or wraps the intake up.

Two delivery modes share one text pipeline (TurnTextFilter):

* generate_next_question() returns the whole turn at once;
* stream_next_question() returns a QuestionStream yielding text chunks that
  concatenate to exactly the same turn text for the same model output.

The filter removes the sophistication tag, keeps only the first question and
appends a deterministic fallback question when a question turn has none, so
every question turn carries exactly one question. When the model call fails
the turn falls back to a template keyed by (missing field, level).
"""

import sys
from contextlib import aclosing
from typing import NamedTuple

from coach_intake.config import get_config
from coach_intake.state import ConversationTurn, TodoItem
from coach_intake.utils.catalogs import load_catalogs
from coach_intake.utils.llm import complete, is_anthropic_model, model_for, stream_complete
from coach_intake.utils.registry import FIELDS_BY_KEY, field_label
from coach_intake.utils.sophistication import (
    TAG_MARKER,
    TAG_RE,
    extract_sophistication_tag,
    level_guidance,
)
from coach_intake.utils.todo_list import get_todo_summary, next_missing_field
from coach_intake.utils.windowing import build_history_messages, window_from_config


class TurnText(NamedTuple):
    text: str  # What the user sees.
    raw: str  # Model output before filtering ("" when the model was not used).
    detected_level: str | None
    is_completion: bool
    missing_field: str | None
    used_fallback: bool


def fallback_question(field_key: str | None, level: str) -> str:
    """Deterministic question for field_key phrased for level."""
    if field_key is None:
        return "Is there anything else you'd like your coach to know?"
    templates = load_catalogs().fallback_questions.get(field_key)
    if templates:
        return templates.get(level) or templates["unknown"]
    return f"Can you tell me about your {field_label(field_key).lower()}?"


def chunk_text(text: str, words_per_chunk: int = 1) -> list[str]:
    """Split text into word chunks whose concatenation is exactly text."""
    words = text.split(" ")
    chunks = []
    for i in range(0, len(words), words_per_chunk):
        chunk = " ".join(words[i:i + words_per_chunk])
        chunks.append(chunk if i == 0 else " " + chunk)
    return [chunk for chunk in chunks if chunk]


class TurnTextFilter:
    """Incremental filter from raw model text to user-visible turn text.

    feed() returns only text that can no longer change: anything from a
    (possibly partial) sophistication tag onwards and trailing whitespace
    are held back until more text arrives or finish() is called.
    """

    def __init__(self, fallback: str, require_question: bool = True):
        self.fallback = fallback
        self.require_question = require_question
        self.raw = ""
        self.sent = ""
        self.appended_fallback = False

    def _hold_index(self) -> int:
        hold = len(self.raw)
        marker_at = self.raw.find(TAG_MARKER)
        if marker_at != -1:
            hold = marker_at
        for start in range(max(0, len(self.raw) - len(TAG_MARKER) + 1), len(self.raw)):
            if TAG_MARKER.startswith(self.raw[start:]):
                hold = min(hold, start)
                break
        return hold

    def _truncate(self, text: str) -> str:
        if self.require_question and "?" in text:
            return text[:text.index("?") + 1]
        return text

    def feed(self, chunk: str) -> str:
        self.raw += chunk
        stable = self.raw[:self._hold_index()].rstrip()
        candidate = self._truncate(stable.lstrip())
        if len(candidate) <= len(self.sent) or not candidate.startswith(self.sent):
            return ""
        delta = candidate[len(self.sent):]
        self.sent = candidate
        return delta

    def final_text(self) -> str:
        text = self._truncate(TAG_RE.sub("", self.raw)).strip()
        if not text:
            self.appended_fallback = True
            return self.fallback
        if self.require_question and "?" not in text:
            self.appended_fallback = True
            return f"{text} {self.fallback}"
        return text

    def finish(self) -> str:
        final = self.final_text()
        if not final.startswith(self.sent):
            # Unreachable while feed() only emits stable prefixes.
            raise RuntimeError("Turn text diverged from streamed prefix.")
        delta = final[len(self.sent):]
        self.sent = final
        return delta


# --- Prompt construction ---

QUESTION_SYSTEM_PROMPT = """\
You are an AI intake coach. Your job is to gather information to create the user's perfect custom AI coach.

VOICE: Conversational and warm, like texting a supportive friend who is also a great coach. \
Confidently knowledgeable, refreshingly honest, no corporate fitness-speak.

SOPHISTICATION LEVEL: {level}
Tone for this level: {guidance}

CONVERSATION GUIDELINES:
1. This isn't a form. Acknowledge what they just shared with genuine warmth before moving on.
2. Ask EXACTLY ONE QUESTION per response. Not two, not "and also...", just ONE.
   Good: "What are your main fitness goals right now?"
   Bad: "What are your goals? And how many days can you train?"
3. Ask about the MOST IMPORTANT missing piece of information. Priority order:
   coach gender preference, then goals and experience, then logistics (frequency, time, equipment),
   then safety (injuries, limitations), then style and motivation, last the optional competition topics.
4. Vague answer? Gently ask for clarity. Extra info volunteered? Roll with it.

INFORMATION COLLECTED:
{completed}

STILL NEEDED (REQUIRED):
{required_pending}
{optional_block}
ASK NEXT ABOUT: {next_label}

After your message, on its own final line, output your assessment of the user's fitness sophistication as:
SOPHISTICATION_LEVEL: BEGINNER | INTERMEDIATE | ADVANCED
"""

INITIAL_USER_PROMPT = """\
THIS IS THE INITIAL MESSAGE. This is the very first message the user will see. You need to:
1. Welcome them warmly and make them excited about creating their coach.
2. Set expectations: this takes 15-20 minutes of conversation.
3. Ask your first question, about: {next_label}.
Keep it to 3-4 sentences of intro, then the one question.
"""

COMPLETION_SYSTEM_PROMPT = """\
You are an AI intake coach wrapping up an intake conversation. The user just shared everything \
needed to create their custom coach. Write an energetic completion message (4-5 sentences) that:
1. Celebrates what they shared, highlighting 1-2 specific things from their profile.
2. Tells them the coach build is starting NOW and takes about 2-3 minutes.
3. Mentions they'll see progress updates while it is built.
Match their sophistication level ({level}): {guidance}
NO MORE QUESTIONS. Do not ask anything.
"""

COMPLETION_USER_PROMPT = """\
WHAT THEY SHARED:
{completed}

Generate the completion message now.
"""


class _TurnPlan(NamedTuple):
    system_prompt: str
    user_prompt: str | None
    messages: list[dict]
    fallback_text: str  # Whole turn when the model is unavailable.
    fallback_question: str  # Appended when a question turn has no question.
    missing_field: str | None
    is_completion: bool

    def text_filter(self) -> TurnTextFilter:
        if self.is_completion:
            return TurnTextFilter(self.fallback_text, require_question=False)
        return TurnTextFilter(self.fallback_question)


def _plan_turn(history: list[ConversationTurn], todo_list: dict[str, TodoItem], level: str) -> _TurnPlan:
    catalogs = load_catalogs()
    summary = get_todo_summary(todo_list)
    missing = next_missing_field(todo_list)
    guidance = level_guidance(level)

    if not summary["required_pending"]:
        return _TurnPlan(
            system_prompt=COMPLETION_SYSTEM_PROMPT.format(level=level, guidance=guidance),
            user_prompt=COMPLETION_USER_PROMPT.format(completed=", ".join(summary["completed"])),
            messages=[],
            fallback_text=catalogs.completion_fallback,
            fallback_question="",
            missing_field=None,
            is_completion=True,
        )

    question = fallback_question(missing, level)
    optional = summary["optional_pending"]
    system_prompt = QUESTION_SYSTEM_PROMPT.format(
        level=level,
        guidance=guidance,
        completed=", ".join(summary["completed"]) or "Nothing yet",
        required_pending=", ".join(summary["required_pending"]),
        optional_block=f"\nSTILL NEEDED (OPTIONAL):\n{', '.join(optional)}\n" if optional else "",
        next_label=FIELDS_BY_KEY[missing].label,
    )

    if not history:
        return _TurnPlan(
            system_prompt=system_prompt,
            user_prompt=INITIAL_USER_PROMPT.format(next_label=FIELDS_BY_KEY[missing].label),
            messages=[],
            fallback_text=f"{catalogs.initial_greeting} {question}",
            fallback_question=question,
            missing_field=missing,
            is_completion=False,
        )

    window = window_from_config(len(history))
    messages = build_history_messages(
        history, window, cache_marker=is_anthropic_model(model_for("questioner"))
    )
    return _TurnPlan(
        system_prompt=system_prompt,
        user_prompt=None,
        messages=messages,
        fallback_text=question,
        fallback_question=question,
        missing_field=missing,
        is_completion=False,
    )


def _fallback_turn(plan: _TurnPlan) -> TurnText:
    return TurnText(
        text=plan.fallback_text,
        raw="",
        detected_level=None,
        is_completion=plan.is_completion,
        missing_field=plan.missing_field,
        used_fallback=True,
    )


def _turn_from_filter(plan: _TurnPlan, text_filter: TurnTextFilter) -> TurnText:
    return TurnText(
        text=text_filter.sent,
        raw=text_filter.raw,
        detected_level=extract_sophistication_tag(text_filter.raw),
        is_completion=plan.is_completion,
        missing_field=plan.missing_field,
        used_fallback=text_filter.appended_fallback,
    )


async def _generate(plan: _TurnPlan) -> TurnText:
    kind = "completion message" if plan.is_completion else "question"
    try:
        raw = await complete(plan.system_prompt, plan.user_prompt, role="questioner", history=plan.messages)
    except Exception as e:
        print(f"[INTAKE] Warning: {kind} generation failed, using fallback: {e!r}", file=sys.stderr)
        return _fallback_turn(plan)

    text_filter = plan.text_filter()
    text_filter.feed(raw)
    text_filter.finish()
    return _turn_from_filter(plan, text_filter)


async def generate_next_question(
    history: list[ConversationTurn],
    todo_list: dict[str, TodoItem],
    level: str,
) -> TurnText:
    """Generate the next assistant turn: one question, or the completion message."""
    return await _generate(_plan_turn(history, todo_list, level))


class QuestionStream:
    """Async iterator of text chunks for one assistant turn.

    ``result`` holds the TurnText once the stream is exhausted. aclose()
    stops the stream early and closes the model request.
    """

    def __init__(self, plan: _TurnPlan):
        self._plan = plan
        self.result: TurnText | None = None
        self._chunks = self._run()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        return await self._chunks.__anext__()

    async def aclose(self) -> None:
        await self._chunks.aclose()

    async def _run(self):
        words = get_config().get("stream_chunk_words", 1)

        if self._plan.is_completion:
            self.result = await _generate(self._plan)
            for chunk in chunk_text(self.result.text, words):
                yield chunk
            return

        text_filter = self._plan.text_filter()
        try:
            async with aclosing(
                stream_complete(
                    self._plan.system_prompt,
                    self._plan.user_prompt,
                    role="questioner",
                    history=self._plan.messages,
                )
            ) as source:
                async for raw_chunk in source:
                    delta = text_filter.feed(raw_chunk)
                    if delta:
                        yield delta
        except Exception as e:
            print(f"[INTAKE] Warning: question stream failed, using fallback: {e!r}", file=sys.stderr)
            if not text_filter.sent:
                self.result = _fallback_turn(self._plan)
                for chunk in chunk_text(self.result.text, words):
                    yield chunk
                return

        delta = text_filter.finish()
        self.result = _turn_from_filter(self._plan, text_filter)
        if delta:
            yield delta


def stream_next_question(
    history: list[ConversationTurn],
    todo_list: dict[str, TodoItem],
    level: str,
) -> QuestionStream:
    """Streaming twin of generate_next_question."""
    return QuestionStream(_plan_turn(history, todo_list, level))
