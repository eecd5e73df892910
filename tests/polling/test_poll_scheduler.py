import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from polling.models import PollResult
from polling.scheduler import PollScheduler
from storage.models import Blockchain


def chain(blockchain_id):
    return Blockchain(
        id=blockchain_id,
        name=blockchain_id,
        rpc_url='http://localhost:8545',
        chain_id=1,
        cache_manager_address='0x' + '01' * 20,
        arb_wasm_cache_address='0x' + '02' * 20,
    )


class SlowPoller:
    def __init__(self, delay=0.0):
        self.delay = delay
        self.calls = []

    async def poll(self, blockchain):
        self.calls.append(blockchain.id)
        await asyncio.sleep(self.delay)
        return PollResult(blockchain_id=blockchain.id, success=True)


def repository_with(*ids):
    repository = MagicMock()
    repository.fetch_enabled_blockchains = AsyncMock(return_value=[chain(i) for i in ids])
    return repository


@pytest.mark.asyncio
async def test_tick_fans_out_one_task_per_blockchain():
    poller = SlowPoller()
    handler = AsyncMock()
    scheduler = PollScheduler(poller, repository_with('arb-one', 'arb-nova'), interval=60, on_result=handler)

    tasks = await scheduler.tick()
    await asyncio.gather(*tasks)

    assert sorted(poller.calls) == ['arb-nova', 'arb-one']
    assert handler.await_count == 2


@pytest.mark.asyncio
async def test_tick_skips_blockchain_still_in_flight():
    poller = SlowPoller(delay=0.1)
    scheduler = PollScheduler(poller, repository_with('arb-one'), interval=60)

    first = await scheduler.tick()
    second = await scheduler.tick()

    assert len(first) == 1
    assert second == []
    assert scheduler.in_flight() == ['arb-one']
    await asyncio.gather(*first)
    assert poller.calls == ['arb-one']


@pytest.mark.asyncio
async def test_skipped_results_are_not_handled():
    poller = MagicMock()
    poller.poll = AsyncMock(return_value=PollResult(blockchain_id='arb-one', success=False, skipped=True))
    handler = AsyncMock()
    scheduler = PollScheduler(poller, repository_with('arb-one'), interval=60, on_result=handler)

    await asyncio.gather(*await scheduler.tick())

    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_handler_failure_is_contained():
    handler = AsyncMock(side_effect=RuntimeError("boom"))
    scheduler = PollScheduler(SlowPoller(), repository_with('arb-one'), interval=60, on_result=handler)

    results = await asyncio.gather(*await scheduler.tick())

    assert results[0].success is True


@pytest.mark.asyncio
async def test_run_forever_stops():
    poller = SlowPoller()
    scheduler = PollScheduler(poller, repository_with('arb-one'), interval=0.01)

    runner = asyncio.create_task(scheduler.run_forever())
    await asyncio.sleep(0.05)
    await scheduler.stop()
    await asyncio.wait_for(runner, timeout=1)

    assert len(poller.calls) >= 2
