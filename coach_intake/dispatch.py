"""Asynchronous build dispatch: fire-and-forget invocation of a named target.

The caller never observes the build's outcome. The build reports back by
writing its own status to the session store.
"""

import asyncio
import sys
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

import httpx

from coach_intake.errors import GenerationTransportError

Handler = Callable[[dict], Awaitable[object]]


class Dispatcher(ABC):
    @abstractmethod
    async def invoke(self, target: str, payload: dict) -> None:
        """Start target with payload. Raises GenerationTransportError if it cannot be started."""


class LocalTaskDispatcher(Dispatcher):
    """Runs handlers as asyncio tasks in the current event loop."""

    def __init__(self, handlers: dict[str, Handler]):
        self.handlers = dict(handlers)
        self.dispatched: list[tuple[str, dict]] = []
        self._tasks: set[asyncio.Task] = set()

    async def invoke(self, target: str, payload: dict) -> None:
        handler = self.handlers.get(target)
        if handler is None:
            raise GenerationTransportError(f"No handler registered for target '{target}'.")

        task = asyncio.create_task(handler(dict(payload)), name=f"{target}:{payload.get('session_id')}")
        self._tasks.add(task)  # Tasks are only weakly referenced by the loop.
        task.add_done_callback(self._on_done)
        self.dispatched.append((target, dict(payload)))
        print(f"[INTAKE] Dispatched '{target}' for session {payload.get('session_id')}", file=sys.stderr)

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            print(f"[INTAKE] Build task {task.get_name()} raised: {task.exception()!r}", file=sys.stderr)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class WebhookDispatcher(Dispatcher):
    """POSTs the payload to ``{base_url}/{target}``; any 2xx counts as started."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def invoke(self, target: str, payload: dict) -> None:
        url = f"{self.base_url}/{target}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise GenerationTransportError(f"Dispatch to {url} failed: {e!r}") from e
