"""Partitions selected contracts into batches and submits them with bounded retries."""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Optional, Sequence

from automation.models import (
    BatchProcessingConfig,
    BatchProcessingResult,
    BatchQueueItem,
    BatchResult,
    SelectedContract,
)
from polling.metrics import MetricsCollector
from services.engine_client import TransactionSubmitter
from storage.models import Blockchain
from work_queue import RetryTask, WorkerPool


def partition(contracts: Sequence[SelectedContract], batch_size: int) -> list[list[SelectedContract]]:
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(contracts[i:i + batch_size]) for i in range(0, len(contracts), batch_size)]


class BatchScheduler:
    def __init__(
        self,
        submitter: TransactionSubmitter,
        metrics: Optional[MetricsCollector] = None,
        max_failures: int = 100,
    ) -> None:
        self.submitter = submitter
        self.metrics = metrics
        # most recent batches that used up every attempt
        self.failures: deque[BatchQueueItem] = deque(maxlen=max_failures)
        self.logger = logging.getLogger(__name__)

    async def run(
        self,
        selected: Sequence[SelectedContract],
        config: BatchProcessingConfig,
        *,
        blockchain: Blockchain,
    ) -> BatchProcessingResult:
        start_time = datetime.now(timezone.utc)
        loop = asyncio.get_running_loop()
        started = loop.time()

        items = [
            BatchQueueItem(contracts=batch, batch_index=index, created_at=start_time)
            for index, batch in enumerate(partition(selected, config.batch_size))
        ]
        self.logger.info("Processing %s contracts in %s batch(es) for %s",
                         len(selected), len(items), blockchain.name)

        durations: dict[int, float] = {}

        async def submit(item: BatchQueueItem) -> Optional[str]:
            attempt_started = loop.time()
            item.scheduled_at = datetime.now(timezone.utc)
            try:
                return await self.submitter.submit_batch(item.contracts, blockchain=blockchain)
            finally:
                durations[item.batch_index] = loop.time() - attempt_started

        def on_retry(task: RetryTask[BatchQueueItem], exc: Exception) -> None:
            task.payload.retry_count = task.attempt
            self.logger.warning("Batch %s/%s for %s failed (attempt %s): %s",
                                task.payload.batch_index + 1, len(items), blockchain.name, task.attempt, exc)

        pool: WorkerPool[BatchQueueItem] = WorkerPool(
            submit,
            concurrency=config.parallel_batches,
            timeout=config.processing_timeout,
            on_retry=on_retry,
        )
        tasks = [
            RetryTask(payload=item, max_attempts=config.max_retries + 1, delay=config.retry_delay)
            for item in items
        ]
        outcomes = await pool.run(tasks)

        results: list[BatchResult] = []
        for outcome in outcomes:
            item = outcome.task.payload
            item.retry_count = outcome.task.retries
            if outcome.success:
                results.append(BatchResult(
                    batch_index=item.batch_index,
                    success=True,
                    processed_contracts=len(item.contracts),
                    retry_count=item.retry_count,
                    duration=durations.get(item.batch_index, 0.0),
                    transaction_id=outcome.value,
                ))
            else:
                self.failures.append(item)
                self.logger.error("Batch %s failed after %s attempt(s) on %s: %s",
                                  item.batch_index + 1, outcome.task.attempt, blockchain.name, outcome.error)
                results.append(BatchResult(
                    batch_index=item.batch_index,
                    success=False,
                    processed_contracts=0,
                    retry_count=item.retry_count,
                    duration=durations.get(item.batch_index, 0.0),
                    error=outcome.error,
                ))

        results.sort(key=lambda r: r.batch_index)
        errors = [
            f"Batch {r.batch_index + 1} failed after {r.retry_count + 1} attempt(s): {r.error}"
            for r in results if not r.success
        ]
        successful = sum(1 for r in results if r.success)
        result = BatchProcessingResult(
            total_batches=len(items),
            successful_batches=successful,
            failed_batches=len(results) - successful,
            total_contracts=len(selected),
            processed_contracts=sum(r.processed_contracts for r in results),
            results=results,
            start_time=start_time,
            end_time=datetime.now(timezone.utc),
            total_duration=loop.time() - started,
            errors=errors,
        )
        if self.metrics is not None:
            self.metrics.record_batch_run(result)
        self.logger.info("Batch run for %s: %s/%s batches succeeded, %s contracts processed",
                         blockchain.name, result.successful_batches, result.total_batches,
                         result.processed_contracts)
        return result
