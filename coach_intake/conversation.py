"""Caller-facing intake operations: start a session, submit or stream an answer, retry a build."""

from contextlib import aclosing

from coach_intake.agents.questioner import generate_next_question, stream_next_question
from coach_intake.controller import on_session_complete
from coach_intake.dispatch import Dispatcher
from coach_intake.errors import SessionNotFoundError
from coach_intake.graph import (
    graph,
    mark_complete,
    new_turn_state,
    route_after_assess,
    route_after_finalize,
    run_single_step,
    services_config,
    turn_outcome,
)
from coach_intake.state import Session, create_session, now_iso
from coach_intake.store import SessionStore
from coach_intake.utils.todo_list import create_empty_todo_list


async def start_session(user_id: str, store: SessionStore, session_id: str | None = None) -> dict:
    """Create a session, generate the opening message and persist both.

    Raises ConditionalWriteError if session_id names a session that already exists.
    """
    session = create_session(user_id, create_empty_todo_list(), session_id=session_id)
    turn = await generate_next_question([], session["todoList"], session["sophisticationLevel"])
    session["history"].append({"role": "assistant", "text": turn.text, "timestamp": now_iso()})
    await store.put(session, require_absent=True)
    return {"session_id": session["sessionId"], "first_question": turn.text}


async def load_active_session(store: SessionStore, user_id: str, session_id: str) -> Session:
    """Load a session that can still take answers. Retired sessions count as missing."""
    session = await store.get(user_id, session_id)
    if session is None or session.get("isDeleted"):
        raise SessionNotFoundError(f"Session {session_id} not found or expired.")
    return session


async def submit_answer(
    user_id: str,
    session_id: str,
    text: str,
    store: SessionStore,
    dispatcher: Dispatcher,
) -> dict:
    """Run one full turn and return the next question or the completion message."""
    session = await load_active_session(store, user_id, session_id)
    final_state = await graph.ainvoke(new_turn_state(session, text), config=services_config(store, dispatcher))
    return turn_outcome(final_state)


async def stream_answer(
    user_id: str,
    session_id: str,
    text: str,
    store: SessionStore,
    dispatcher: Dispatcher,
):
    """Run one turn, yielding ``{"type": "chunk", "text"}`` events then one ``{"type": "result", ...}``.

    The chunks concatenate to the same assistant text submit_answer would
    return for the same model output. Closing the generator early cancels
    the model stream and nothing is persisted.
    """
    session = await load_active_session(store, user_id, session_id)
    config = services_config(store, dispatcher)
    state = new_turn_state(session, text)

    for node in ("record", "extract", "assess"):
        state = await run_single_step(state, node, config)

    if route_after_assess(state) == "wrap_up":
        state = {**state, "session": mark_complete(state["session"])}

    session = state["session"]
    question = stream_next_question(session["history"], session["todoList"], session["sophisticationLevel"])
    async with aclosing(question):
        async for chunk in question:
            yield {"type": "chunk", "text": chunk}

    turn = question.result
    state = {**state, "assistant_text": turn.text, "raw_assistant_text": turn.raw}
    state = await run_single_step(state, "finalize", config)
    state = await run_single_step(state, route_after_finalize(state), config)

    yield {"type": "result", **turn_outcome(state)}


async def retry_build(user_id: str, session_id: str, store: SessionStore, dispatcher: Dispatcher) -> dict:
    """Hand a completed session to the build again after a failed attempt.

    Returns the handoff result. Running and finished builds short-circuit
    exactly as a repeated completion signal would.
    """
    session = await load_active_session(store, user_id, session_id)
    if not session.get("isComplete"):
        raise ValueError(f"Session {session_id} has not finished the intake yet.")
    result = await on_session_complete(session, store, dispatcher)
    return result._asdict()
