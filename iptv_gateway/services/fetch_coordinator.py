"""
Fetch Coordination

Concurrency primitives shared by the catalog and EPG pipelines: a
non-queuing re-entrancy guard for refresh cycles, a bounded FIFO pool of
upstream fetch slots, and a registry that lets concurrent callers share a
single in-flight fetch per key.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RefreshGuard:
    """
    Prevents overlapping refresh cycles.

    A trigger arriving while a refresh runs is skipped, not queued; the
    running refresh completes or fails on its own.
    """

    def __init__(self, name: str):
        self.name = name
        self._lock = asyncio.Lock()

    async def execute(self, refresh_func: Callable[[], Awaitable[dict]]) -> dict:
        """
        Run refresh_func unless another refresh holds the guard.

        Returns:
            Result from refresh_func, or a skip response if already running
        """
        if self._lock.locked():
            logger.warning("%s already in progress, skipping this request", self.name)
            return {
                "status": "skipped",
                "message": f"{self.name} already in progress",
            }

        async with self._lock:
            return await refresh_func()

    def is_running(self) -> bool:
        return self._lock.locked()


class FetchSlotPool:
    """
    Counting semaphore bounding concurrent upstream fetches.

    Waiters are woken in FIFO order, so global fan-out to the upstream stays
    bounded however many countries are requested at once.
    """

    def __init__(self, size: int):
        if size < 1:
            raise ValueError("Fetch slot pool size must be >= 1")
        self.size = size
        self._semaphore = asyncio.Semaphore(size)
        self._active = 0
        self._waiting = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return self._waiting

    async def run(self, fetch_func: Callable[[], Awaitable[T]]) -> T:
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        self._active += 1
        logger.debug("Fetch slot acquired (%s/%s active, %s waiting)", self._active, self.size, self._waiting)
        try:
            return await fetch_func()
        finally:
            self._active -= 1
            self._semaphore.release()


class InflightFetches(Generic[T]):
    """Shares one running fetch per key among all concurrent callers."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def get(self, key: str) -> asyncio.Task | None:
        return self._tasks.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def keys(self) -> list[str]:
        return list(self._tasks)

    def start(self, key: str, fetch_func: Callable[[], Awaitable[T]]) -> "asyncio.Task[T]":
        """
        Return the running task for key, creating it if none is in flight.

        Must be called without awaiting between the membership check and
        registration; the task removes itself from the registry on completion.
        """
        task = self._tasks.get(key)
        if task is not None:
            return task

        task = asyncio.create_task(fetch_func())
        self._tasks[key] = task
        task.add_done_callback(lambda done, k=key: self._discard(k, done))
        return task

    def _discard(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def cancel_all(self) -> None:
        tasks: list[Any] = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
