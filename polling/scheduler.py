"""Interval ticker that fans polls out across enabled blockchains."""
from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from polling.models import PollResult
from polling.state_poller import StatePoller
from storage.models import Blockchain

if TYPE_CHECKING:
    from storage.sqlite_repository import SQLiteRepository

ResultHandler = Callable[[Blockchain, PollResult], Awaitable[None]]


class PollScheduler:
    def __init__(
        self,
        poller: StatePoller,
        repository: "SQLiteRepository",
        interval: float,
        jitter: float = 0.0,
        on_result: Optional[ResultHandler] = None,
    ) -> None:
        self.poller = poller
        self.repository = repository
        self.interval = interval
        self.jitter = jitter
        self.on_result = on_result
        self._tasks: dict[str, asyncio.Task] = {}
        self._stopped = asyncio.Event()
        self.logger = logging.getLogger(__name__)

    def in_flight(self) -> list[str]:
        return [blockchain_id for blockchain_id, task in self._tasks.items() if not task.done()]

    async def tick(self) -> list[asyncio.Task]:
        """Starts one poll per enabled blockchain that has no poll still running."""
        try:
            blockchains = await self.repository.fetch_enabled_blockchains()
        except Exception as exc:
            self.logger.error("Could not load blockchains: %s", exc)
            return []

        started: list[asyncio.Task] = []
        for blockchain in blockchains:
            running = self._tasks.get(blockchain.id)
            if running is not None and not running.done():
                self.logger.info("Previous poll for %s still running; skipping tick.", blockchain.name)
                continue
            task = asyncio.create_task(self._poll_one(blockchain), name=f"poll-{blockchain.id}")
            self._tasks[blockchain.id] = task
            started.append(task)
        return started

    async def _poll_one(self, blockchain: Blockchain) -> Optional[PollResult]:
        if self.jitter > 0:
            await asyncio.sleep(random.uniform(0, self.jitter))
        result = await self.poller.poll(blockchain)
        if self.on_result is not None and not result.skipped:
            try:
                await self.on_result(blockchain, result)
            except Exception:
                self.logger.exception("Result handler failed for %s", blockchain.name)
        return result

    async def run_forever(self) -> None:
        self.logger.info("Poll scheduler started (every %ss).", self.interval)
        self._stopped.clear()
        while not self._stopped.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self) -> None:
        self._stopped.set()
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.logger.info("Poll scheduler stopped.")
