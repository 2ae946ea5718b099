"""Bounded-concurrency execution of deferred async work units."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
import structlog

from repositories.base import CacheRepository

logger = structlog.get_logger()

Task = Callable[[], Awaitable[Any]]


async def run_with_concurrency(tasks: List[Task], limit: int, name: str = "tasks") -> List[Any]:
    """Run zero-argument coroutine factories with at most ``limit`` in flight.

    Results are positional. A task that raises leaves its exception in its
    slot; siblings keep running.
    """
    if not tasks:
        return []

    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(task: Task) -> Any:
        async with semaphore:
            return await task()

    results = await asyncio.gather(*(_run(t) for t in tasks), return_exceptions=True)

    failed = 0
    for idx, result in enumerate(results):
        if isinstance(result, Exception):
            failed += 1
            logger.warning("Task failed",
                           batch=name,
                           task_index=idx,
                           error=str(result),
                           error_type=type(result).__name__)

    logger.debug("Batch completed",
                 batch=name,
                 total=len(tasks),
                 failed=failed,
                 concurrency=max(1, limit))
    return list(results)


class TaskBatch:
    """Accumulates deferred tasks for one height and runs them on demand.

    Flushing is driven by the owner, which watches ``len()`` across its
    batches to keep the number of unflushed tasks bounded.
    """

    def __init__(self, limit: int, name: str = "primary"):
        self.limit = max(1, limit)
        self.name = name
        self.pending: List[Task] = []

        self.flush_count = 0
        self.peak_pending = 0
        self.executed = 0
        self.failed = 0

    def __len__(self) -> int:
        return len(self.pending)

    def add(self, task: Task) -> None:
        self.pending.append(task)
        self.peak_pending = max(self.peak_pending, len(self.pending))

    async def flush(self) -> List[Any]:
        """Drain and execute everything pending."""
        if not self.pending:
            return []
        tasks, self.pending = self.pending, []
        self.flush_count += 1

        results = await run_with_concurrency(tasks, self.limit, name=self.name)
        self.executed += len(tasks)
        self.failed += sum(1 for r in results if isinstance(r, Exception))
        return results


class LowPriorityQueue:
    """Deduplicated deferred work, drained after a height's primary writes.

    Keys are remembered for the queue's lifetime so each key is submitted at
    most once. A task that raises or returns False counts as failed and its
    key is forgotten so a later height can retry it.

    With a ``cache`` the completed keys are also recorded in a shared set,
    so several worker processes skip work another one already finished.
    """

    def __init__(
        self,
        limit: int,
        name: str = "low_priority",
        cache: Optional[CacheRepository] = None,
        shared_set: Optional[str] = None,
    ):
        self.limit = max(1, limit)
        self.name = name
        self.cache = cache
        self.shared_set = shared_set or f"{name}:done"
        self._pending: Dict[str, Task] = {}
        self._seen: Set[str] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def submit(self, key: Optional[str], task: Task) -> bool:
        """Queue ``task`` unless ``key`` was already submitted."""
        if not key or key in self._seen:
            return False
        self._seen.add(key)
        self._pending[key] = task
        return True

    async def drain(self) -> List[Any]:
        """Run everything queued so far with the queue's own ceiling."""
        if not self._pending:
            return []
        pending, self._pending = self._pending, {}

        keys = []
        for key in pending:
            if self.cache and await self._done_elsewhere(key):
                continue
            keys.append(key)

        results = await run_with_concurrency([pending[k] for k in keys], self.limit, name=self.name)
        for key, result in zip(keys, results):
            if isinstance(result, Exception) or result is False:
                self._seen.discard(key)
            elif self.cache:
                await self._mark_done(key)
        return results

    async def _done_elsewhere(self, key: str) -> bool:
        try:
            return await self.cache.is_in_set(self.shared_set, key)
        except Exception as e:
            logger.warning("Shared dedupe lookup failed", queue=self.name, key=key, error=str(e))
            return False

    async def _mark_done(self, key: str) -> None:
        try:
            await self.cache.add_to_set(self.shared_set, key)
        except Exception as e:
            logger.warning("Shared dedupe update failed", queue=self.name, key=key, error=str(e))
