from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Per-key request coalescing for coroutines on one event loop.

    The first caller for a key starts the work as a task; callers arriving
    while it runs await the same task. Waiters are shielded, so a cancelled
    caller does not cancel the shared work for the others.
    """

    def __init__(self) -> None:
        self._calls: dict[str, asyncio.Task[T]] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._calls

    def __len__(self) -> int:
        return len(self._calls)

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> tuple[T, bool]:
        """Run ``fn`` once per concurrent burst for ``key``.

        Returns ``(result, shared)`` where ``shared`` is True for callers that
        joined an existing flight. Exceptions propagate to every caller.
        """
        task = self._calls.get(key)
        if task is not None:
            return await asyncio.shield(task), True

        task = asyncio.ensure_future(fn())
        self._calls[key] = task
        task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return await asyncio.shield(task), False

    def _forget(self, key: str, task: asyncio.Task[T]) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        # Mark the exception retrieved when every waiter was cancelled.
        if not task.cancelled():
            task.exception()
