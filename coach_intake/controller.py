"""Session & idempotency controller: the exactly-once handoff to the artifact build.

configGeneration.status is a distributed lock. The only transitions are:

    not_started -> in_progress
    in_progress -> complete | failed
    failed      -> in_progress   (retry)

on_session_complete() inspects the status, persists the in_progress lock
with a conditional write, and only then dispatches the build. A concurrent
caller either sees in_progress when it reads, or loses the conditional
write. Either way it short-circuits without dispatching.
"""

import sys
from datetime import datetime, timezone
from typing import Literal, NamedTuple

from coach_intake.config import get_config
from coach_intake.dispatch import Dispatcher
from coach_intake.errors import ConditionalWriteError, InvalidTransitionError
from coach_intake.state import Session, generation_status, now_iso, parse_iso
from coach_intake.store import SessionStore

IdempotencyReason = Literal["not_started", "already_complete", "already_in_progress", "stale_lease"]

ALLOWED_TRANSITIONS = {
    ("not_started", "in_progress"),
    ("in_progress", "complete"),
    ("in_progress", "failed"),
    ("failed", "in_progress"),
}

LEASE_EXPIRED_ERROR = "generation lease expired"


class IdempotencyCheck(NamedTuple):
    should_proceed: bool
    reason: IdempotencyReason
    artifact_id: str | None = None
    elapsed_seconds: int | None = None


class HandoffResult(NamedTuple):
    artifact_id: str | None = None
    already_generating: bool = False
    dispatched: bool = False
    dispatch_error: str | None = None


def assert_transition(old: str, new: str) -> None:
    """Raise InvalidTransitionError unless old -> new is in the transition table."""
    if (old, new) not in ALLOWED_TRANSITIONS:
        raise InvalidTransitionError(f"configGeneration cannot move from '{old}' to '{new}'.")


def _elapsed_seconds(started_at: str | None, now: datetime | None = None) -> int | None:
    if not started_at:
        return None
    now = now or datetime.now(timezone.utc)
    return int((now - parse_iso(started_at)).total_seconds())


def _lease_seconds() -> float | None:
    return get_config().get("generation_lease_seconds")


def check_generation_idempotency(
    session: Session,
    now: datetime | None = None,
    lease_seconds: float | None = None,
) -> IdempotencyCheck:
    """Decide whether a completion signal may start a build.

    complete and in_progress short-circuit. An in_progress lock older than
    lease_seconds (when given) is reported as stale and may be retried.
    """
    generation = session.get("configGeneration") or {}
    status = generation.get("status", "not_started")

    if status == "complete":
        return IdempotencyCheck(False, "already_complete", artifact_id=generation.get("artifactId"))

    if status == "in_progress":
        elapsed = _elapsed_seconds(generation.get("startedAt"), now)
        if lease_seconds is not None and elapsed is not None and elapsed > lease_seconds:
            return IdempotencyCheck(True, "stale_lease", elapsed_seconds=elapsed)
        return IdempotencyCheck(False, "already_in_progress", elapsed_seconds=elapsed)

    return IdempotencyCheck(True, "not_started")


def _with_generation(session: Session, generation: dict) -> Session:
    assert_transition(generation_status(session), generation["status"])
    return {**session, "configGeneration": generation, "lastActivity": now_iso()}


def create_generation_lock(session: Session) -> Session:
    """Return a copy of session holding the in_progress lock."""
    return _with_generation(session, {"status": "in_progress", "startedAt": now_iso()})


def create_generation_failure(session: Session, error: BaseException | str) -> Session:
    """Return a copy of session with the build marked failed, keeping startedAt."""
    message = error if isinstance(error, str) else (str(error) or type(error).__name__)
    started_at = (session.get("configGeneration") or {}).get("startedAt") or now_iso()
    return _with_generation(session, {
        "status": "failed",
        "startedAt": started_at,
        "failedAt": now_iso(),
        "error": message,
    })


def create_generation_success(session: Session, artifact_id: str) -> Session:
    """Return a copy of session with the build complete and the artifact recorded."""
    started_at = (session.get("configGeneration") or {}).get("startedAt")
    completed_at = now_iso()
    generation = {"status": "complete", "completedAt": completed_at, "artifactId": artifact_id}
    if started_at:
        generation["startedAt"] = started_at
    return _with_generation(session, generation)


def describe_generation(session: Session, now: datetime | None = None) -> dict:
    """Status, timestamps, error and elapsed time of the build, for callers to display."""
    generation = dict(session.get("configGeneration") or {"status": "not_started"})
    if generation.get("status") == "in_progress":
        generation["elapsedSeconds"] = _elapsed_seconds(generation.get("startedAt"), now)
    return generation


async def _short_circuit_from_store(store: SessionStore, session: Session) -> HandoffResult:
    """A conditional write lost the race. Report whatever the winner left behind."""
    current = await store.get(session["userId"], session["sessionId"])
    if current is not None and generation_status(current) == "complete":
        return HandoffResult(artifact_id=current["configGeneration"].get("artifactId"))
    return HandoffResult(already_generating=True)


async def on_session_complete(
    session: Session,
    store: SessionStore,
    dispatcher: Dispatcher,
    target: str | None = None,
) -> HandoffResult:
    """Hand a completed session to the artifact build at most once.

    The session is persisted wholesale together with the lock, so the turn
    that completed the intake is saved by the same write.
    """
    session_id = session["sessionId"]
    check = check_generation_idempotency(session, lease_seconds=_lease_seconds())

    if check.reason == "already_complete":
        print(f"[INTAKE] Session {session_id} already has artifact {check.artifact_id}. Skipping build.", file=sys.stderr)
        return HandoffResult(artifact_id=check.artifact_id)

    if check.reason == "already_in_progress":
        print(
            f"[INTAKE] Build already in progress for session {session_id} "
            f"({check.elapsed_seconds}s elapsed). Skipping.",
            file=sys.stderr,
        )
        return HandoffResult(already_generating=True)

    inspected = generation_status(session)
    try:
        if check.reason == "stale_lease":
            print(
                f"[INTAKE] Warning: build lock for session {session_id} is {check.elapsed_seconds}s old. "
                "Expiring it and retrying.",
                file=sys.stderr,
            )
            session = create_generation_failure(session, LEASE_EXPIRED_ERROR)
            await store.put(session, expected_status=inspected)
            inspected = "failed"

        session = create_generation_lock(session)
        await store.put(session, expected_status=inspected)
    except ConditionalWriteError as e:
        print(f"[INTAKE] Lost lock race for session {session_id}: {e}", file=sys.stderr)
        return await _short_circuit_from_store(store, session)

    target = target or get_config().get("build_target", "build-coach-config")
    payload = {"user_id": session["userId"], "session_id": session_id}
    try:
        await dispatcher.invoke(target, payload)
    except Exception as e:
        print(f"[INTAKE] Failed to dispatch build for session {session_id}: {e!r}", file=sys.stderr)
        failed = create_generation_failure(session, e)
        try:
            await store.put(failed, expected_status="in_progress")
        except Exception as reset_error:
            print(f"[INTAKE] Failed to reset session {session_id} to failed: {reset_error!r}", file=sys.stderr)
        return HandoffResult(dispatch_error=failed["configGeneration"]["error"])

    return HandoffResult(dispatched=True)
