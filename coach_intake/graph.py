"""LangGraph StateGraph for one intake turn.

    record -> extract -> assess -> (ask | wrap_up) -> finalize -> (persist | handoff) -> END

The store and dispatcher travel in ``config["configurable"]["services"]``
so nodes stay plain functions of (state, config).
"""

import sys
from typing import NamedTuple

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph

from coach_intake.agents.extractor import extract_updates
from coach_intake.agents.questioner import TurnText, generate_next_question
from coach_intake.controller import on_session_complete
from coach_intake.dispatch import Dispatcher
from coach_intake.errors import ConditionalWriteError
from coach_intake.state import TurnState, now_iso
from coach_intake.store import SessionStore
from coach_intake.utils.sophistication import update_level
from coach_intake.utils.todo_list import get_todo_progress, is_todo_complete, merge_updates, policy_from_config
from coach_intake.utils.validator import validate_input


class Services(NamedTuple):
    store: SessionStore
    dispatcher: Dispatcher


def services_config(store: SessionStore, dispatcher: Dispatcher) -> RunnableConfig:
    return {"configurable": {"services": Services(store, dispatcher)}}


def _services(config: RunnableConfig) -> Services:
    return config["configurable"]["services"]


def new_turn_state(session: dict, user_text: str) -> TurnState:
    """Initial graph state for a user answer against a freshly loaded session."""
    return {
        "session": session,
        "user_text": user_text,
        "loaded_status": (session.get("configGeneration") or {}).get("status", "not_started"),
        "updates": {},
        "assistant_text": "",
        "raw_assistant_text": "",
        "is_complete": False,
        "handoff": {},
    }


# --- Nodes ---

async def record_node(state: TurnState, config: RunnableConfig) -> dict:
    """Append the user's answer to the history."""
    text = validate_input(state["user_text"])
    session = state["session"]
    turn = {"role": "user", "text": text, "timestamp": now_iso()}
    return {
        "user_text": text,
        "session": {**session, "history": [*session["history"], turn], "lastActivity": turn["timestamp"]},
    }


async def extract_node(state: TurnState, config: RunnableConfig) -> dict:
    """Extract field updates from the answer and merge them into the to-do list."""
    session = state["session"]
    history = session["history"]
    turn_index = len(history) - 1  # The user turn recorded above.
    updates = await extract_updates(state["user_text"], history[:-1], session["todoList"])
    todo_list = merge_updates(session["todoList"], updates, turn_index, policy=policy_from_config())
    return {"updates": updates, "session": {**session, "todoList": todo_list}}


async def assess_node(state: TurnState, config: RunnableConfig) -> dict:
    """Apply keyword signals from the answer to the sophistication level."""
    session = state["session"]
    level = update_level(session["sophisticationLevel"], user_text=state["user_text"])
    return {
        "session": {**session, "sophisticationLevel": level},
        "is_complete": is_todo_complete(session["todoList"]),
    }


def _route_after_assess(state: TurnState) -> str:
    return "wrap_up" if state["is_complete"] else "ask"


def _turn_updates(turn: TurnText) -> dict:
    return {"assistant_text": turn.text, "raw_assistant_text": turn.raw}


async def ask_node(state: TurnState, config: RunnableConfig) -> dict:
    session = state["session"]
    turn = await generate_next_question(session["history"], session["todoList"], session["sophisticationLevel"])
    return _turn_updates(turn)


def mark_complete(session: dict) -> dict:
    """Flag the intake as complete. completedAt is set once."""
    if session.get("isComplete"):
        return session
    return {**session, "isComplete": True, "completedAt": now_iso()}


async def wrap_up_node(state: TurnState, config: RunnableConfig) -> dict:
    """Mark the intake complete and generate the completion message."""
    session = mark_complete(state["session"])
    turn = await generate_next_question(session["history"], session["todoList"], session["sophisticationLevel"])
    return {"session": session, **_turn_updates(turn)}


async def finalize_node(state: TurnState, config: RunnableConfig) -> dict:
    """Record the assistant turn and apply any sophistication tag it carried."""
    session = state["session"]
    turn = {"role": "assistant", "text": state["assistant_text"], "timestamp": now_iso()}
    level = update_level(session["sophisticationLevel"], assistant_text=state["raw_assistant_text"])
    return {
        "session": {
            **session,
            "history": [*session["history"], turn],
            "sophisticationLevel": level,
            "lastActivity": turn["timestamp"],
        },
    }


def _route_after_finalize(state: TurnState) -> str:
    return "handoff" if state["is_complete"] else "persist"


async def persist_node(state: TurnState, config: RunnableConfig) -> dict:
    """Write the session back, unless the build status moved since the turn began."""
    await _services(config).store.put(state["session"], expected_status=state["loaded_status"])
    return {}


async def handoff_node(state: TurnState, config: RunnableConfig) -> dict:
    """Persist the completed session with the build lock and dispatch the build.

    When the controller short-circuits it writes nothing, so the turn is
    saved here against the status it was loaded with. A build that moved
    the status in the meantime wins and the turn is dropped.
    """
    services = _services(config)
    result = await on_session_complete(state["session"], services.store, services.dispatcher)
    if not result.dispatched and result.dispatch_error is None:
        try:
            await services.store.put(state["session"], expected_status=state["loaded_status"])
        except ConditionalWriteError as e:
            print(f"[INTAKE] Turn for session {state['session']['sessionId']} not saved: {e}", file=sys.stderr)
    return {"handoff": result._asdict()}


# --- Build the graph ---

workflow = StateGraph(TurnState)

workflow.add_node("record", record_node)
workflow.add_node("extract", extract_node)
workflow.add_node("assess", assess_node)
workflow.add_node("ask", ask_node)
workflow.add_node("wrap_up", wrap_up_node)
workflow.add_node("finalize", finalize_node)
workflow.add_node("persist", persist_node)
workflow.add_node("handoff", handoff_node)

workflow.set_entry_point("record")

workflow.add_edge("record", "extract")
workflow.add_edge("extract", "assess")
workflow.add_conditional_edges("assess", _route_after_assess, {"ask": "ask", "wrap_up": "wrap_up"})
workflow.add_edge("ask", "finalize")
workflow.add_edge("wrap_up", "finalize")
workflow.add_conditional_edges("finalize", _route_after_finalize, {"persist": "persist", "handoff": "handoff"})
workflow.add_edge("persist", END)
workflow.add_edge("handoff", END)

graph = workflow.compile()


# --- Step-execution helpers for the streaming path ---

_NODE_FNS = {
    "record": record_node,
    "extract": extract_node,
    "assess": assess_node,
    "ask": ask_node,
    "wrap_up": wrap_up_node,
    "finalize": finalize_node,
    "persist": persist_node,
    "handoff": handoff_node,
}


async def run_single_step(state: TurnState, node_name: str, config: RunnableConfig) -> TurnState:
    """Run a single node and return the updated state.

    Used by the streaming path, which replaces ask/wrap_up with a
    token stream and then resumes at finalize.
    """
    node_fn = _NODE_FNS[node_name]
    updates = await node_fn(state, config)
    return {**state, **updates}


def route_after_assess(state: TurnState) -> str:
    """Public wrapper around _route_after_assess for manual step execution."""
    return _route_after_assess(state)


def route_after_finalize(state: TurnState) -> str:
    return _route_after_finalize(state)


def turn_outcome(state: TurnState) -> dict:
    """Caller-facing summary of a finished turn."""
    session = state["session"]
    outcome = {
        "session_id": session["sessionId"],
        "is_complete": state["is_complete"],
        "progress": get_todo_progress(session["todoList"]),
        "sophistication_level": session["sophisticationLevel"],
        "handoff": state.get("handoff") or {},
    }
    key = "completion_message" if state["is_complete"] else "next_question"
    outcome[key] = state["assistant_text"]
    return outcome
