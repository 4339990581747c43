"""Coach Intake: Streamlit chat UI over the intake conversation."""

import sys
from pathlib import Path

# Add project root to path so 'coach_intake' is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent.parent))

import asyncio
import json

import streamlit as st

from coach_intake.config import get_config
from coach_intake.controller import describe_generation
from coach_intake.conversation import retry_build, start_session, stream_answer
from coach_intake.dispatch import LocalTaskDispatcher
from coach_intake.main import build_services
from coach_intake.utils.validator import validate_input

st.set_page_config(page_title="Coach Intake", layout="centered")
st.title("Create your AI coach")
st.markdown(
    "A short conversation about your goals, schedule and preferences. "
    "When every required answer is in, your coach config is built in the background."
)


# ---------------------------------------------------------------------------
# Event loop and services live for the whole browser session
# ---------------------------------------------------------------------------


def _loop() -> asyncio.AbstractEventLoop:
    if "loop" not in st.session_state:
        st.session_state["loop"] = asyncio.new_event_loop()
    return st.session_state["loop"]


def _run(coro):
    return _loop().run_until_complete(coro)


def _services():
    if "services" not in st.session_state:
        st.session_state["services"] = build_services(get_config())
    return st.session_state["services"]


def _iter_sync(agen, outcome: dict):
    """Drive an async event generator from Streamlit's synchronous script thread.

    Yields chunk text and stores the final result event in outcome.
    """
    while True:
        try:
            event = _run(agen.__anext__())
        except StopAsyncIteration:
            return
        if event["type"] == "chunk":
            yield event["text"]
        else:
            outcome.update(event)


def _render_progress(outcome: dict) -> None:
    progress = outcome.get("progress")
    if not progress:
        return
    st.progress(
        progress["required_percentage"] / 100,
        text=f"{progress['required_completed']}/{progress['required_total']} required answers "
        f"· level: {outcome.get('sophistication_level', 'unknown')}",
    )


def _render_generation(store, dispatcher, user_id: str, session_id: str) -> None:
    session = _run(store.get(user_id, session_id))
    if session is None:
        return
    generation = describe_generation(session)
    with st.expander("Coach build status", expanded=True):
        st.write(f"**Status:** {generation['status']}")
        if generation.get("elapsedSeconds") is not None:
            st.write(f"**Elapsed:** {generation['elapsedSeconds']}s")
        if generation.get("error"):
            st.error(generation["error"])
        if generation.get("artifactId"):
            artifact = _run(store.get_artifact(user_id, generation["artifactId"]))
            if artifact:
                st.success(f"{artifact.get('coach_name', 'Your coach')} is ready.")
                st.code(json.dumps(artifact, indent=2), language="json")
        if generation["status"] == "failed" and st.button("Retry build"):
            handoff = _run(retry_build(user_id, session_id, store, dispatcher))
            st.session_state["outcome"] = {**st.session_state["outcome"], "handoff": handoff}
            st.rerun()


# ---------------------------------------------------------------------------
# Page
# ---------------------------------------------------------------------------

store, dispatcher = _services()
user_id = st.sidebar.text_input("User id", value=st.session_state.get("user_id", "local-user"))

if st.sidebar.button("Start new intake", type="primary") or "session_id" not in st.session_state:
    with st.spinner("Getting your coach creator ready..."):
        started = _run(start_session(user_id, store))
    st.session_state["user_id"] = user_id
    st.session_state["session_id"] = started["session_id"]
    st.session_state["messages"] = [{"role": "assistant", "text": started["first_question"]}]
    st.session_state["outcome"] = {}

session_id = st.session_state["session_id"]
user_id = st.session_state["user_id"]

for message in st.session_state["messages"]:
    with st.chat_message(message["role"]):
        st.markdown(message["text"])

outcome = st.session_state["outcome"]
_render_progress(outcome)

if outcome.get("is_complete"):
    if isinstance(dispatcher, LocalTaskDispatcher) and dispatcher.pending:
        with st.status("Building your coach...", expanded=False):
            _run(dispatcher.drain())
    _render_generation(store, dispatcher, user_id, session_id)
else:
    answer = st.chat_input("Your answer")
    if answer:
        try:
            answer = validate_input(answer)
        except ValueError as e:
            st.error(str(e))
        else:
            st.session_state["messages"].append({"role": "user", "text": answer})
            with st.chat_message("user"):
                st.markdown(answer)

            result: dict = {}
            with st.chat_message("assistant"):
                text = st.write_stream(
                    _iter_sync(stream_answer(user_id, session_id, answer, store, dispatcher), result)
                )
            st.session_state["messages"].append({"role": "assistant", "text": text})
            st.session_state["outcome"] = result
            st.rerun()
