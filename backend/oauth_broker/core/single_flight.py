"""Single-flight coordination for per-key async operations.

At most one execution per key is in progress. Concurrent callers for the same
key await the shared task and see the same result or exception. The entry is
dropped as soon as the task settles, so a later caller starts a fresh run.

Scope is one process. Instances of the service do not share this map.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight:
    """Concurrency-safe map of key -> in-flight task.

    Construct one per process and inject it where needed. The check-then-insert
    is done under an asyncio.Lock, and waiters go through asyncio.shield so a
    caller that gives up (e.g. its own request timed out) does not cancel the
    shared task for everyone else.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._tasks)

    def in_flight(self, key: str) -> bool:
        """Whether a task for key is currently running."""
        return key in self._tasks

    async def run(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run func for key, or join the run already in progress.

        Args:
            key: Deduplication key.
            func: Zero-argument coroutine factory. Called only by the caller
                that starts the run.

        Returns:
            Result of the shared run.

        Raises:
            Exception: Whatever the shared run raised, re-raised to every waiter.
        """
        async with self._lock:
            task = self._tasks.get(key)
            if task is None:
                task = asyncio.ensure_future(func())
                self._tasks[key] = task
                task.add_done_callback(lambda t, k=key: self._discard(k, t))
            else:
                logger.debug("Joining in-flight operation", extra={"key": key})

        return await asyncio.shield(task)

    def _discard(self, key: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        # Mark the exception retrieved when every waiter has gone away
        if not task.cancelled():
            task.exception()

    def clear(self) -> None:
        """Forget every entry without cancelling running tasks (for tests)."""
        self._tasks.clear()
