"""One polling cycle per blockchain: events, contract state, balances, checkpoint."""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

import constants
from config import AutomationConfig
from errors import ChainClientError, ConfigError
from polling.metrics import MetricsCollector
from polling.models import PollResult, decayed_bid
from services.chain_state_client import ChainStateClient, sort_events
from storage.models import Blockchain, PollingSession

if TYPE_CHECKING:
    from storage.sqlite_repository import SQLiteRepository


class StatePoller:
    """
    Fetches everything that happened on a blockchain since its last checkpoint.

    `lastSyncedBlock` only moves forward, and only after the whole cycle has
    completed; a timeout or RPC failure leaves it where it was so the next
    cycle re-reads the same range.
    """

    def __init__(
        self,
        client: ChainStateClient,
        repository: "SQLiteRepository",
        metrics: MetricsCollector,
        processing_timeout: float = constants.DEFAULT_PROCESSING_TIMEOUT_MS / 1000,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.client = client
        self.repository = repository
        self.metrics = metrics
        self.processing_timeout = processing_timeout
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, asyncio.Lock] = {}
        self.logger = logging.getLogger(__name__)

    def is_polling(self, blockchain_id: str) -> bool:
        lock = self._locks.get(blockchain_id)
        return lock is not None and lock.locked()

    async def poll(self, blockchain: Blockchain) -> PollResult:
        lock = self._locks.setdefault(blockchain.id, asyncio.Lock())
        if lock.locked():
            self.logger.info("Poll for %s already in flight; skipping.", blockchain.name)
            return PollResult(blockchain_id=blockchain.id, success=False, skipped=True,
                              error="poll already in flight")

        async with lock:
            session = PollingSession(blockchain_id=blockchain.id, start_time=datetime.now(timezone.utc))
            loop = asyncio.get_running_loop()
            started = loop.time()
            timeout = self.cycle_timeout(blockchain)
            try:
                result = await asyncio.wait_for(self._cycle(blockchain), timeout=timeout)
            except asyncio.TimeoutError:
                self.logger.error("Poll for %s timed out after %ss", blockchain.name, timeout)
                result = PollResult(blockchain_id=blockchain.id, success=False,
                                    error=f"polling timed out after {timeout}s")
            except ChainClientError as exc:
                self.logger.error("Poll for %s failed: %s", blockchain.name, exc)
                result = PollResult(blockchain_id=blockchain.id, success=False, error=str(exc))
            except Exception as exc:
                self.logger.exception("Unexpected error polling %s", blockchain.name)
                result = PollResult(blockchain_id=blockchain.id, success=False, error=str(exc))

            if result.success and result.to_block > blockchain.last_synced_block:
                try:
                    await self.repository.update_last_synced_block(blockchain.id, result.to_block)
                    blockchain.last_synced_block = result.to_block
                except Exception as exc:
                    self.logger.error("Could not persist checkpoint for %s: %s", blockchain.name, exc)
                    result.success = False
                    result.error = f"checkpoint write failed: {exc}"

            session.end_time = datetime.now(timezone.utc)
            session.duration = loop.time() - started
            session.success = result.success
            session.error = result.error
            session.data_points = len(result.events) + len(result.contract_states)
            await self._record(session)
            return result

    def cycle_timeout(self, blockchain: Blockchain) -> float:
        """Seconds allowed for one cycle, honouring a per-blockchain `processingTimeout`."""
        if not blockchain.settings:
            return self.processing_timeout
        defaults = AutomationConfig(processing_timeout=round(self.processing_timeout * 1000))
        try:
            return defaults.merged(blockchain.settings).processing_timeout_seconds
        except ConfigError as exc:
            self.logger.warning("Ignoring settings for %s: %s", blockchain.name, exc)
            return self.processing_timeout

    async def _record(self, session: PollingSession) -> None:
        self.metrics.record_session(session)
        try:
            await self.repository.record_polling_session(session)
        except Exception as exc:
            self.logger.warning("Could not persist polling session for %s: %s", session.blockchain_id, exc)

    async def _cycle(self, blockchain: Blockchain) -> PollResult:
        current_block = await self.client.get_block_number(blockchain)
        last_synced = blockchain.last_synced_block
        result = PollResult(blockchain_id=blockchain.id, success=True,
                            from_block=last_synced, to_block=last_synced)

        if current_block > last_synced:
            events = await self.client.get_events(blockchain, last_synced + 1, current_block)
            result.events = sort_events(events)
            result.from_block = last_synced + 1
            result.to_block = current_block

        contracts = await self.repository.fetch_contracts(blockchain.id)
        addresses = {contract.address.lower() for contract in contracts}
        addresses.update(event.contract_address for event in result.events if event.contract_address)

        states = await asyncio.gather(
            *(self.client.get_contract_state(blockchain, address) for address in sorted(addresses)),
            return_exceptions=True,
        )
        for address, state in zip(sorted(addresses), states):
            if isinstance(state, BaseException):
                self.logger.warning("State fetch for %s on %s failed: %s", address, blockchain.name, state)
                result.fetch_errors[address] = str(state)
            else:
                result.contract_states[address] = state

        result.cache_manager = await self.client.get_cache_manager_state(blockchain)
        await self.repository.apply_bid_events(blockchain.id, result.events)
        await self._fill_cached_bids(blockchain, result)

        if blockchain.cache_manager_automation_address:
            owners = sorted({contract.owner_user_id.lower() for contract in contracts})
            balances = await asyncio.gather(
                *(self.client.get_user_balance(blockchain, owner) for owner in owners),
                return_exceptions=True,
            )
            for owner, balance in zip(owners, balances):
                if isinstance(balance, BaseException):
                    self.logger.warning("Balance fetch for %s on %s failed: %s", owner, blockchain.name, balance)
                else:
                    result.user_balances[owner] = balance

        self.logger.debug(
            "Polled %s blocks %s-%s: %s events, %s states, %s fetch errors",
            blockchain.name, result.from_block, result.to_block,
            len(result.events), len(result.contract_states), len(result.fetch_errors),
        )
        return result

    async def _fill_cached_bids(self, blockchain: Blockchain, result: PollResult) -> None:
        unknown = {address: state for address, state in result.contract_states.items()
                   if state.is_cached and state.current_bid is None and state.code_hash}
        if not unknown:
            return
        bids = await self.repository.fetch_bids(blockchain.id, {state.code_hash.lower() for state in unknown.values()})
        now = int(self.clock().timestamp())
        decay_rate = result.cache_manager.decay_rate if result.cache_manager else 0
        for address, state in unknown.items():
            stored = bids.get(state.code_hash.lower())
            if stored is None:
                continue
            bid = decayed_bid(stored.bid, stored.bid_block_timestamp, now, decay_rate)
            result.contract_states[address] = dataclasses.replace(state, current_bid=bid)
