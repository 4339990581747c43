"""Entry point: runs a terminal intake conversation, then the coach build."""

import asyncio
import sys

from coach_intake.agents.builder import run_build
from coach_intake.config import get_config
from coach_intake.controller import describe_generation
from coach_intake.conversation import retry_build, start_session, stream_answer, submit_answer
from coach_intake.dispatch import Dispatcher, LocalTaskDispatcher, WebhookDispatcher
from coach_intake.store import JsonFileSessionStore, SessionStore

USAGE = "Usage: coach-intake [--no-stream] [--user ID] [--retry SESSION_ID]"


def build_services(config: dict) -> tuple[SessionStore, Dispatcher]:
    """Store and dispatcher from config: JSON files, local build unless dispatch_url is set."""
    store = JsonFileSessionStore(config.get("store_path", "./sessions"))
    if config.get("dispatch_url"):
        return store, WebhookDispatcher(config["dispatch_url"])

    target = config.get("build_target", "build-coach-config")
    return store, LocalTaskDispatcher({target: lambda payload: run_build(payload, store)})


async def _read_answer() -> str | None:
    try:
        return (await asyncio.to_thread(input, "\n> ")).strip()
    except EOFError:
        return None


async def run(user_id: str, stream: bool = True) -> None:
    """Run the intake for user_id until the build has been handed off."""
    store, dispatcher = build_services(get_config())

    started = await start_session(user_id, store)
    session_id = started["session_id"]
    print(f"[INTAKE] Session {session_id}", file=sys.stderr)
    print(started["first_question"])

    while True:
        answer = await _read_answer()
        if answer is None:
            print(f"\n[INTAKE] Session {session_id} saved.", file=sys.stderr)
            return
        if not answer:
            continue

        if stream:
            outcome = {}
            async for event in stream_answer(user_id, session_id, answer, store, dispatcher):
                if event["type"] == "chunk":
                    print(event["text"], end="", flush=True)
                else:
                    outcome = event
            print()
        else:
            outcome = await submit_answer(user_id, session_id, answer, store, dispatcher)
            print(outcome.get("next_question") or outcome.get("completion_message"))

        progress = outcome["progress"]
        print(
            f"[INTAKE] {progress['required_completed']}/{progress['required_total']} required fields "
            f"({outcome['sophistication_level']})",
            file=sys.stderr,
        )
        if outcome["is_complete"]:
            break

    await follow_build(user_id, session_id, store, dispatcher, outcome["handoff"])


async def _confirm_retry() -> bool:
    answer = await _read_answer()
    return bool(answer) and answer.lower() in ("y", "yes")


async def follow_build(user_id, session_id, store, dispatcher, handoff: dict, confirm=_confirm_retry) -> dict:
    """Report the build outcome, offering a retry while it keeps failing.

    Returns the last generation record seen.
    """
    while True:
        if handoff.get("dispatch_error"):
            print(f"[INTAKE] Build could not be started: {handoff['dispatch_error']}", file=sys.stderr)
        elif isinstance(dispatcher, LocalTaskDispatcher):
            print("[INTAKE] Building your coach...", file=sys.stderr)
            await dispatcher.drain()

        generation = describe_generation(await store.get(user_id, session_id))
        print(f"[INTAKE] Build status: {generation['status']}")
        if generation.get("artifactId"):
            print(f"[INTAKE] Coach config: {generation['artifactId']}")
        if generation.get("error"):
            print(f"[INTAKE] Error: {generation['error']}")

        if generation["status"] != "failed":
            return generation
        print("Retry build? [y/N]")
        if not await confirm():
            print(
                f"[INTAKE] Session {session_id} saved. "
                f"Retry with: coach-intake --user {user_id} --retry {session_id}",
                file=sys.stderr,
            )
            return generation
        handoff = await retry_build(user_id, session_id, store, dispatcher)


async def retry(user_id: str, session_id: str) -> dict:
    """Retry the build of an already completed session."""
    store, dispatcher = build_services(get_config())
    handoff = await retry_build(user_id, session_id, store, dispatcher)
    return await follow_build(user_id, session_id, store, dispatcher, handoff)


def _option(args: list[str], flag: str) -> str | None:
    if flag not in args:
        return None
    index = args.index(flag)
    if index + 1 >= len(args):
        print(USAGE, file=sys.stderr)
        sys.exit(2)
    return args[index + 1]


def main() -> None:
    """CLI entry point: coach-intake [--no-stream] [--user ID] [--retry SESSION_ID]."""
    args = sys.argv[1:]
    stream = True

    if "--no-stream" in args:
        stream = False
        args.remove("--no-stream")

    user_id = _option(args, "--user") or "local-user"
    retry_session = _option(args, "--retry")

    if retry_session:
        asyncio.run(retry(user_id, retry_session))
    else:
        asyncio.run(run(user_id, stream=stream))


if __name__ == "__main__":
    main()
