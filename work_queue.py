#!/usr/bin/env python3
"""Bounded-retry tasks, an asyncio worker pool that runs them, and named topic queues."""
import asyncio
import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar('T')

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryTask(Generic[T]):
    payload: T
    max_attempts: int
    delay: float = 0.0
    attempt: int = 0
    priority: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    scheduled_at: Optional[datetime] = None

    @property
    def retries(self) -> int:
        return max(self.attempt - 1, 0)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass(slots=True)
class TaskOutcome(Generic[T]):
    task: RetryTask[T]
    success: bool
    value: Any = None
    error: Optional[str] = None


class WorkerPool(Generic[T]):
    """
    Runs RetryTasks with `concurrency` workers over one priority queue.

    A task is popped by exactly one worker; a failed attempt is retried by
    the same worker after `task.delay` seconds until `max_attempts` is used
    up. Each attempt is bounded by `timeout`.
    """

    def __init__(
        self,
        handler: Callable[[T], Awaitable[Any]],
        concurrency: int = 1,
        timeout: Optional[float] = None,
        on_retry: Optional[Callable[[RetryTask[T], Exception], None]] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.handler = handler
        self.concurrency = concurrency
        self.timeout = timeout
        self.on_retry = on_retry
        self._counter = itertools.count()

    async def run(self, tasks: list[RetryTask[T]]) -> list[TaskOutcome[T]]:
        queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        for task in tasks:
            queue.put_nowait((-task.priority, next(self._counter), task))

        outcomes: list[TaskOutcome[T]] = []
        workers = [
            asyncio.create_task(self._worker(queue, outcomes))
            for _ in range(min(self.concurrency, max(len(tasks), 1)))
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                worker.cancel()
        return outcomes

    async def _worker(self, queue: asyncio.PriorityQueue, outcomes: list[TaskOutcome[T]]) -> None:
        while True:
            try:
                _, _, task = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcomes.append(await self._execute(task))
            queue.task_done()

    async def _execute(self, task: RetryTask[T]) -> TaskOutcome[T]:
        while True:
            task.attempt += 1
            task.scheduled_at = datetime.now(timezone.utc)
            try:
                if self.timeout is not None:
                    value = await asyncio.wait_for(self.handler(task.payload), timeout=self.timeout)
                else:
                    value = await self.handler(task.payload)
                return TaskOutcome(task=task, success=True, value=value)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if isinstance(exc, asyncio.TimeoutError):
                    task.last_error = f"timed out after {self.timeout}s"
                else:
                    task.last_error = str(exc) or exc.__class__.__name__
                if task.exhausted:
                    logger.warning("Task failed after %s attempt(s): %s", task.attempt, task.last_error)
                    return TaskOutcome(task=task, success=False, error=task.last_error)
                if self.on_retry is not None:
                    self.on_retry(task, exc)
                logger.info("Attempt %s/%s failed (%s); retrying in %ss",
                            task.attempt, task.max_attempts, task.last_error, task.delay)
                if task.delay > 0:
                    await asyncio.sleep(task.delay)


class TopicQueues:
    """Named in-process queues (`alerts`, `alert-processing`, `notifications`)."""

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue] = defaultdict(asyncio.Queue)

    def enqueue(self, topic: str, message: Any) -> None:
        self._queues[topic].put_nowait(message)

    async def get(self, topic: str) -> Any:
        return await self._queues[topic].get()

    def drain(self, topic: str) -> list[Any]:
        queue = self._queues[topic]
        items = []
        while not queue.empty():
            items.append(queue.get_nowait())
        return items

    def size(self, topic: str) -> int:
        return self._queues[topic].qsize()
