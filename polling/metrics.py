"""In-memory aggregates for polling sessions and batch runs."""
from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from polling.models import PollingMetrics
from storage.models import PollingSession

if TYPE_CHECKING:
    from automation.models import BatchProcessingResult


@dataclass(slots=True)
class BatchProcessingStats:
    total_runs: int = 0
    total_batches: int = 0
    average_processing_time: float = 0.0
    success_rate: float = 0.0
    throughput: float = 0.0  # contracts per second
    error_rate: float = 0.0
    retry_rate: float = 0.0


@dataclass(slots=True)
class _BatchTotals:
    runs: int = 0
    batches: int = 0
    successful: int = 0
    failed: int = 0
    retries: int = 0
    contracts: int = 0
    duration: float = 0.0
    last_errors: list[str] = field(default_factory=list)


class MetricsCollector:
    """Append-only sink; nothing here feeds back into control flow."""

    def __init__(self, max_sessions: int = 500) -> None:
        self._lock = threading.Lock()
        self._max_sessions = max_sessions
        self._sessions: dict[str, list[PollingSession]] = defaultdict(list)
        self._metrics: dict[str, PollingMetrics] = {}
        self._batches = _BatchTotals()

    def record_session(self, session: PollingSession) -> None:
        with self._lock:
            sessions = self._sessions[session.blockchain_id]
            sessions.append(session)
            if len(sessions) > self._max_sessions:
                del sessions[: len(sessions) - self._max_sessions]

            metrics = self._metrics.setdefault(session.blockchain_id, PollingMetrics(session.blockchain_id))
            duration = session.duration or 0.0
            metrics.average_polling_time = (
                (metrics.average_polling_time * metrics.total_polls) + duration
            ) / (metrics.total_polls + 1)
            metrics.total_polls += 1
            finished_at = session.end_time or session.start_time
            metrics.last_polling_time = finished_at
            if session.success:
                metrics.successful_polls += 1
                metrics.last_successful_poll = finished_at
            else:
                metrics.failed_polls += 1
                metrics.last_failed_poll = finished_at
            metrics.success_rate = metrics.successful_polls / metrics.total_polls * 100

    def get_metrics(self, blockchain_id: str) -> Optional[PollingMetrics]:
        with self._lock:
            metrics = self._metrics.get(blockchain_id)
            if metrics is None:
                return None
            return PollingMetrics(
                blockchain_id=metrics.blockchain_id,
                total_polls=metrics.total_polls,
                successful_polls=metrics.successful_polls,
                failed_polls=metrics.failed_polls,
                average_polling_time=metrics.average_polling_time,
                last_polling_time=metrics.last_polling_time,
                last_successful_poll=metrics.last_successful_poll,
                last_failed_poll=metrics.last_failed_poll,
                success_rate=metrics.success_rate,
            )

    def all_metrics(self) -> list[PollingMetrics]:
        with self._lock:
            ids = sorted(self._metrics)
        return [m for m in (self.get_metrics(blockchain_id) for blockchain_id in ids) if m is not None]

    def sessions(self, blockchain_id: str) -> list[PollingSession]:
        with self._lock:
            return list(self._sessions.get(blockchain_id, ()))

    def record_batch_run(self, result: "BatchProcessingResult") -> None:
        with self._lock:
            totals = self._batches
            totals.runs += 1
            totals.batches += result.total_batches
            totals.successful += result.successful_batches
            totals.failed += result.failed_batches
            totals.retries += sum(batch.retry_count for batch in result.results)
            totals.contracts += result.processed_contracts
            totals.duration += result.total_duration
            totals.last_errors = list(result.errors)

    def batch_stats(self) -> BatchProcessingStats:
        with self._lock:
            totals = self._batches
            if totals.batches == 0:
                return BatchProcessingStats(total_runs=totals.runs)
            return BatchProcessingStats(
                total_runs=totals.runs,
                total_batches=totals.batches,
                average_processing_time=totals.duration / totals.runs,
                success_rate=totals.successful / totals.batches * 100,
                throughput=totals.contracts / totals.duration if totals.duration > 0 else 0.0,
                error_rate=totals.failed / totals.batches * 100,
                retry_rate=totals.retries / totals.batches,
            )
