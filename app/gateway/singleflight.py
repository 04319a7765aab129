"""Single-flight: at most one outstanding call, shared by every concurrent caller."""

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    A guarded slot holding at most one in-flight task.

    The first caller starts the task; callers arriving while it runs await the
    same task. The slot is cleared when the task finishes, fails or is
    cancelled, so a failed flight never blocks the next caller.

    Waiters are shielded: cancelling one waiter does not cancel the shared
    task for the others.
    """

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task[T]] = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def do(self, func: Callable[[], Awaitable[T]]) -> T:
        task = self._task
        if task is None or task.done():
            task = asyncio.ensure_future(func())
            self._task = task
            task.add_done_callback(self._clear)
        return await asyncio.shield(task)

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _clear(self, task: "asyncio.Task[T]") -> None:
        if self._task is task:
            self._task = None
        # Nobody may be left awaiting; mark the outcome as retrieved.
        if not task.cancelled():
            task.exception()
