"""Durable session store.

Sessions are read and written wholesale. ``put`` supports three
preconditions: ``require_exists`` (the record must already be stored),
``require_absent`` (it must not be) and ``expected_status`` (the stored
configGeneration.status must equal it, a missing record counting as
``not_started``). The check and the write happen under one lock, which
makes ``expected_status`` a compare-and-swap on the generation status.
"""

import asyncio
import json
import os
import sys
from abc import ABC, abstractmethod
from pathlib import Path

from coach_intake.errors import ConditionalWriteError
from coach_intake.state import Session, generation_status, session_from_json, session_to_json


class SessionStore(ABC):
    """Keyed store for Session records and generated artifacts."""

    @abstractmethod
    async def get(self, user_id: str, session_id: str) -> Session | None:
        ...

    @abstractmethod
    async def put(self, session: Session, require_exists: bool = False, expected_status: str | None = None,
                  require_absent: bool = False) -> None:
        ...

    @abstractmethod
    async def save_artifact(self, user_id: str, artifact: dict) -> None:
        ...

    @abstractmethod
    async def get_artifact(self, user_id: str, artifact_id: str) -> dict | None:
        ...

    @abstractmethod
    async def list_sessions(self, user_id: str) -> list[Session]:
        ...


def _check_preconditions(
    stored_json: str | None,
    require_exists: bool,
    expected_status: str | None,
    require_absent: bool = False,
) -> None:
    if require_exists and stored_json is None:
        raise ConditionalWriteError("Session does not exist.")
    if require_absent and stored_json is not None:
        raise ConditionalWriteError("Session already exists.", current_status=generation_status(json.loads(stored_json)))
    if expected_status is None:
        return
    current = "not_started" if stored_json is None else generation_status(json.loads(stored_json))
    if current != expected_status:
        raise ConditionalWriteError(
            f"Expected configGeneration status '{expected_status}', found '{current}'.",
            current_status=current,
        )


class InMemorySessionStore(SessionStore):
    """Process-local store. Records are kept serialized so reads never alias."""

    def __init__(self):
        self._sessions: dict[tuple[str, str], str] = {}
        self._artifacts: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()
        self.writes = 0

    async def get(self, user_id: str, session_id: str) -> Session | None:
        stored = self._sessions.get((user_id, session_id))
        return None if stored is None else session_from_json(stored)

    async def put(self, session: Session, require_exists: bool = False, expected_status: str | None = None,
                  require_absent: bool = False) -> None:
        key = (session["userId"], session["sessionId"])
        payload = session_to_json(session)
        async with self._lock:
            _check_preconditions(self._sessions.get(key), require_exists, expected_status, require_absent)
            self._sessions[key] = payload
            self.writes += 1

    async def save_artifact(self, user_id: str, artifact: dict) -> None:
        self._artifacts[(user_id, artifact["coach_id"])] = json.dumps(artifact)

    async def get_artifact(self, user_id: str, artifact_id: str) -> dict | None:
        stored = self._artifacts.get((user_id, artifact_id))
        return None if stored is None else json.loads(stored)

    async def list_sessions(self, user_id: str) -> list[Session]:
        return [
            session_from_json(stored)
            for (owner, _), stored in sorted(self._sessions.items())
            if owner == user_id
        ]


class JsonFileSessionStore(SessionStore):
    """One JSON file per session under ``root/<user>/sessions``, replaced atomically.

    File I/O runs in worker threads so a build running on the same event
    loop is not stalled by disk access.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self._lock = asyncio.Lock()

    def _session_path(self, user_id: str, session_id: str) -> Path:
        return self.root / user_id / "sessions" / f"{session_id}.json"

    def _artifact_path(self, user_id: str, artifact_id: str) -> Path:
        return self.root / user_id / "artifacts" / f"{artifact_id}.json"

    @staticmethod
    def _read(path: Path) -> str | None:
        try:
            return path.read_text()
        except FileNotFoundError:
            return None

    @staticmethod
    def _write_atomic(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(text)
        os.replace(tmp, path)

    def _list_session_files(self, user_id: str) -> list[str]:
        directory = self.root / user_id / "sessions"
        if not directory.exists():
            return []
        return [path.read_text() for path in sorted(directory.glob("*.json"))]

    async def get(self, user_id: str, session_id: str) -> Session | None:
        stored = await asyncio.to_thread(self._read, self._session_path(user_id, session_id))
        return None if stored is None else session_from_json(stored)

    async def put(self, session: Session, require_exists: bool = False, expected_status: str | None = None,
                  require_absent: bool = False) -> None:
        path = self._session_path(session["userId"], session["sessionId"])
        payload = session_to_json(session)
        async with self._lock:
            stored = await asyncio.to_thread(self._read, path)
            _check_preconditions(stored, require_exists, expected_status, require_absent)
            await asyncio.to_thread(self._write_atomic, path, payload)

    async def save_artifact(self, user_id: str, artifact: dict) -> None:
        path = self._artifact_path(user_id, artifact["coach_id"])
        await asyncio.to_thread(self._write_atomic, path, json.dumps(artifact, indent=2))
        print(f"[INTAKE] Saved artifact to {path}", file=sys.stderr)

    async def get_artifact(self, user_id: str, artifact_id: str) -> dict | None:
        stored = await asyncio.to_thread(self._read, self._artifact_path(user_id, artifact_id))
        return None if stored is None else json.loads(stored)

    async def list_sessions(self, user_id: str) -> list[Session]:
        return [session_from_json(text) for text in await asyncio.to_thread(self._list_session_files, user_id)]
