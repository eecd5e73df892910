import asyncio

import pytest

from automation.batch_scheduler import BatchScheduler, partition
from automation.models import BatchProcessingConfig, SelectedContract
from errors import SubmissionError
from polling.metrics import MetricsCollector
from storage.models import Blockchain

BLOCKCHAIN = Blockchain(
    id='arb-one',
    name='Arbitrum One',
    rpc_url='http://localhost:8545',
    chain_id=42161,
    cache_manager_address='0x' + '01' * 20,
    arb_wasm_cache_address='0x' + '02' * 20,
    cache_manager_automation_address='0x' + '03' * 20,
)


def selected(n: int) -> list[SelectedContract]:
    return [SelectedContract(user='0xuser', address=f'0x{i:040x}') for i in range(n)]


class RecordingSubmitter:
    def __init__(self, fail_batches=(), fail_times=None):
        self.calls = []
        self.fail_batches = set(fail_batches)
        self.fail_times = fail_times  # fail only the first N attempts of a failing batch
        self.attempts = {}

    async def submit_batch(self, contracts, *, blockchain):
        first = contracts[0].address
        self.calls.append(len(contracts))
        self.attempts[first] = self.attempts.get(first, 0) + 1
        if first in self.fail_batches and (self.fail_times is None or self.attempts[first] <= self.fail_times):
            raise SubmissionError("engine unavailable")
        return f"queue-{first}"


def config(**overrides) -> BatchProcessingConfig:
    values = dict(batch_size=50, max_retries=3, retry_delay=0, processing_timeout=5)
    values.update(overrides)
    return BatchProcessingConfig(**values)


def test_partition_sizes():
    assert [len(b) for b in partition(selected(120), 50)] == [50, 50, 20]
    assert partition([], 50) == []


@pytest.mark.asyncio
async def test_all_batches_succeed():
    submitter = RecordingSubmitter()
    metrics = MetricsCollector()
    scheduler = BatchScheduler(submitter, metrics)

    result = await scheduler.run(selected(120), config(), blockchain=BLOCKCHAIN)

    assert result.total_batches == 3
    assert result.successful_batches == 3
    assert result.failed_batches == 0
    assert result.total_contracts == 120
    assert result.processed_contracts == 120
    assert sorted(submitter.calls) == [20, 50, 50]
    assert [r.batch_index for r in result.results] == [0, 1, 2]
    assert all(r.retry_count == 0 for r in result.results)
    assert result.results[0].transaction_id == f"queue-0x{0:040x}"
    assert metrics.batch_stats().total_batches == 3


@pytest.mark.asyncio
async def test_exhausted_batch_records_max_retries_and_continues():
    contracts = selected(120)
    failing = contracts[50].address  # second batch
    submitter = RecordingSubmitter(fail_batches={failing})
    scheduler = BatchScheduler(submitter)

    result = await scheduler.run(contracts, config(max_retries=3), blockchain=BLOCKCHAIN)

    assert result.successful_batches == 2
    assert result.failed_batches == 1
    assert result.processed_contracts == 70
    failed = result.results[1]
    assert failed.success is False
    assert failed.retry_count == 3
    assert failed.error == 'engine unavailable'
    assert submitter.attempts[failing] == 4
    assert len(result.errors) == 1
    assert 'engine unavailable' in result.errors[0]
    assert [item.batch_index for item in scheduler.failures] == [1]


@pytest.mark.asyncio
async def test_transient_failure_retried_then_succeeds():
    contracts = selected(10)
    submitter = RecordingSubmitter(fail_batches={contracts[0].address}, fail_times=2)
    scheduler = BatchScheduler(submitter)

    result = await scheduler.run(contracts, config(batch_size=10), blockchain=BLOCKCHAIN)

    assert result.successful_batches == 1
    assert result.results[0].retry_count == 2
    assert not scheduler.failures


@pytest.mark.asyncio
async def test_zero_retries_means_single_attempt():
    contracts = selected(5)
    submitter = RecordingSubmitter(fail_batches={contracts[0].address})
    result = await BatchScheduler(submitter).run(contracts, config(max_retries=0), blockchain=BLOCKCHAIN)

    assert submitter.attempts[contracts[0].address] == 1
    assert result.results[0].retry_count == 0
    assert result.failed_batches == 1


@pytest.mark.asyncio
async def test_attempt_timeout_is_a_failure():
    class SlowSubmitter:
        async def submit_batch(self, contracts, *, blockchain):
            await asyncio.sleep(1)

    result = await BatchScheduler(SlowSubmitter()).run(
        selected(3), config(max_retries=1, processing_timeout=0.01), blockchain=BLOCKCHAIN
    )

    assert result.failed_batches == 1
    assert result.results[0].retry_count == 1
    assert 'timed out' in result.results[0].error


@pytest.mark.asyncio
async def test_parallel_batches_each_claimed_once():
    submitter = RecordingSubmitter()
    result = await BatchScheduler(submitter).run(
        selected(95), config(batch_size=10, parallel_batches=4), blockchain=BLOCKCHAIN
    )

    assert result.total_batches == 10
    assert len(submitter.calls) == 10
    assert [r.batch_index for r in result.results] == list(range(10))
    assert result.processed_contracts == 95


@pytest.mark.asyncio
async def test_empty_selection():
    result = await BatchScheduler(RecordingSubmitter()).run([], config(), blockchain=BLOCKCHAIN)
    assert result.total_batches == 0
    assert result.results == []
    assert result.success is True


@pytest.mark.asyncio
async def test_failure_record_keeps_only_latest():
    contracts = selected(5)
    submitter = RecordingSubmitter(fail_batches={c.address for c in contracts})
    scheduler = BatchScheduler(submitter, max_failures=3)

    for _ in range(2):
        await scheduler.run(contracts, config(batch_size=1, max_retries=0), blockchain=BLOCKCHAIN)

    assert len(scheduler.failures) == 3
    assert [item.batch_index for item in scheduler.failures] == [2, 3, 4]
