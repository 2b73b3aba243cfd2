import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight:
    """Collapse concurrent calls for the same key into one in-flight task.

    Waiters await the shared task through ``asyncio.shield``: a caller that
    is cancelled or times out is released immediately while the task runs to
    completion for everyone else.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def in_flight(self, key: str) -> bool:
        return key in self._pending

    async def do(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._pending[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug("Joining in-flight request %s", key[:12])
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        # Mark the exception retrieved when every waiter has gone away
        if not task.cancelled() and task.exception() is not None:
            logger.debug("In-flight request %s failed: %s", key[:12], task.exception())
