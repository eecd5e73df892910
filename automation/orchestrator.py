"""Wires poll results through selection, assessment, batch submission and alert evaluation."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from alerts.alert_engine import AlertEngine
from alerts.models import AlertConditions, AlertTrigger
from automation import bid_assessor
from automation.batch_scheduler import BatchScheduler
from automation.contract_selector import ContractSelector
from automation.models import (
    AutomationError,
    AutomationResult,
    AutomationStats,
    BatchProcessingConfig,
    BatchProcessingResult,
    BidAssessment,
    ContractSelectionResult,
)
from config import AutomationConfig
from errors import ConfigError
from polling.models import PollResult
from polling.state_poller import StatePoller
from storage.models import Blockchain, ContractSelectionCriteria, MonitoredContract

if TYPE_CHECKING:
    from storage.sqlite_repository import SQLiteRepository


@dataclass(slots=True)
class CycleReport:
    blockchain_id: str
    selection: Optional[ContractSelectionResult] = None
    assessments: dict[str, BidAssessment] = field(default_factory=dict)
    triggers: list[AlertTrigger] = field(default_factory=list)
    batch_task: Optional[asyncio.Task] = None
    skipped_reason: Optional[str] = None


@dataclass(slots=True)
class _Prepared:
    contracts: list[MonitoredContract]
    selection: ContractSelectionResult
    assessments: dict[str, BidAssessment]
    config: AutomationConfig


class AutomationPipeline:
    def __init__(
        self,
        repository: "SQLiteRepository",
        poller: StatePoller,
        selector: ContractSelector,
        batch_scheduler: Optional[BatchScheduler],
        alert_engine: AlertEngine,
        automation_defaults: AutomationConfig,
        parallel_batches: int = 1,
    ) -> None:
        self.repository = repository
        self.poller = poller
        self.selector = selector
        # None when no transaction engine is configured; selection and alerts still run
        self.batch_scheduler = batch_scheduler
        self.alert_engine = alert_engine
        self.automation_defaults = automation_defaults
        self.parallel_batches = parallel_batches
        self._batch_tasks: dict[str, asyncio.Task] = {}
        self.last_batch_results: dict[str, BatchProcessingResult] = {}
        self.logger = logging.getLogger(__name__)

    # --- Per-cycle path ---

    async def handle_poll_result(self, blockchain: Blockchain, result: PollResult) -> CycleReport:
        report = CycleReport(blockchain_id=blockchain.id)
        if not result.success:
            report.skipped_reason = result.error or 'poll failed'
            return report

        prepared = await self._prepare(blockchain, result)
        report.selection = prepared.selection
        report.assessments = prepared.assessments

        reason = self._submission_blocker(blockchain, prepared)
        if reason is None:
            running = self._batch_tasks.get(blockchain.id)
            if running is not None and not running.done():
                reason = 'previous batch run still in flight'
            else:
                report.batch_task = asyncio.create_task(
                    self._run_batches(blockchain, prepared), name=f"batches-{blockchain.id}"
                )
                self._batch_tasks[blockchain.id] = report.batch_task
                report.batch_task.add_done_callback(self._log_batch_failure)
        if reason is not None:
            self.logger.debug("No batch run for %s: %s", blockchain.name, reason)
            report.skipped_reason = reason

        report.triggers = await self._evaluate_alerts(blockchain, result, prepared)
        return report

    def _log_batch_failure(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            self.logger.error("Batch run %s failed: %s", task.get_name(), task.exception())

    async def wait_for_batches(self) -> None:
        pending = [task for task in self._batch_tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def batches_in_flight(self) -> list[str]:
        return [blockchain_id for blockchain_id, task in self._batch_tasks.items() if not task.done()]

    # --- One-shot run ---

    async def execute_automation(self) -> AutomationResult:
        stats = AutomationStats(start_time=datetime.now(timezone.utc))
        errors: list[AutomationError] = []
        loop = asyncio.get_running_loop()
        started = loop.time()

        blockchains = await self.repository.fetch_enabled_blockchains()
        stats.total_blockchains = len(blockchains)
        for blockchain in blockchains:
            try:
                result = await self.poller.poll(blockchain)
                if not result.success:
                    raise RuntimeError(result.error or 'poll failed')
                prepared = await self._prepare(blockchain, result)
                stats.total_contracts += prepared.selection.total_processed

                reason = self._submission_blocker(blockchain, prepared)
                if reason is None:
                    batch_result = await self._run_batches(blockchain, prepared)
                    stats.processed_contracts += batch_result.processed_contracts
                    stats.successful_batches += batch_result.successful_batches
                    stats.failed_batches += batch_result.failed_batches
                    for message in batch_result.errors:
                        errors.append(AutomationError(blockchain.id, message, datetime.now(timezone.utc)))
                else:
                    self.logger.info("Skipping submission for %s: %s", blockchain.name, reason)

                await self._evaluate_alerts(blockchain, result, prepared)
                stats.processed_blockchains += 1
            except Exception as exc:
                self.logger.error("Automation failed for %s: %s", blockchain.name, exc)
                errors.append(AutomationError(blockchain.id, str(exc), datetime.now(timezone.utc)))

        stats.end_time = datetime.now(timezone.utc)
        stats.duration = loop.time() - started
        return AutomationResult(success=not errors, stats=stats, errors=errors)

    # --- Shared steps ---

    async def _prepare(self, blockchain: Blockchain, result: PollResult) -> _Prepared:
        try:
            config = self.automation_defaults.merged(blockchain.settings)
        except ConfigError as exc:
            self.logger.error("Invalid automation settings for %s (%s); automation disabled.", blockchain.name, exc)
            config = self.automation_defaults._replace(enabled=False)
        contracts, criteria = await self._load_contracts(blockchain, config.pagination_limit)

        selection = self.selector.select(contracts, criteria, result.contract_states)
        assessments = self.assess(selection, criteria, result)
        self.selector.exclude_ineligible(selection, assessments)
        return _Prepared(contracts=contracts, selection=selection, assessments=assessments, config=config)

    async def _load_contracts(
        self,
        blockchain: Blockchain,
        page_size: int,
    ) -> tuple[list[MonitoredContract], dict[str, ContractSelectionCriteria]]:
        """Reads monitored contracts and their criteria `page_size` rows at a time."""
        contracts: list[MonitoredContract] = []
        criteria: dict[str, ContractSelectionCriteria] = {}
        offset = 0
        while True:
            page = await self.repository.fetch_contracts(blockchain.id, limit=page_size, offset=offset)
            contracts.extend(page)
            criteria.update(await self.repository.fetch_criteria([contract.address for contract in page]))
            if len(page) < page_size:
                return contracts, criteria
            offset += page_size

    @staticmethod
    def assess(
        selection: ContractSelectionResult,
        criteria: dict[str, ContractSelectionCriteria],
        result: PollResult,
    ) -> dict[str, BidAssessment]:
        """
        Assesses every selected contract against the chain's current minimum bid.

        The proposal is what the automation contract would bid for this
        position, raised to the smallest bid that clears the safety margin.
        """
        manager = result.cache_manager
        utilization = manager.utilization if manager else 0
        decay_rate = manager.decay_rate if manager else 0
        assessments: dict[str, BidAssessment] = {}
        for index, selected in enumerate(selection.selected_contracts):
            state = result.contract_states[selected.address]
            contract_criteria = criteria[selected.address]
            proposed = max(
                bid_assessor.calculate_bid_amount(
                    contract_criteria.max_bid, index, state.min_bid, utilization, decay_rate
                ),
                bid_assessor.smallest_safe_bid(contract_criteria.min_bid, state.min_bid),
            )
            assessments[selected.address] = bid_assessor.assess(
                selected.address, contract_criteria, state.min_bid, proposed
            )
        return assessments

    def _submission_blocker(self, blockchain: Blockchain, prepared: _Prepared) -> Optional[str]:
        if not prepared.config.enabled:
            return 'automation disabled'
        if self.batch_scheduler is None:
            return 'transaction engine not configured'
        if not blockchain.cache_manager_automation_address:
            return 'no automation contract configured'
        if not prepared.selection.selected_contracts:
            return 'no eligible contracts'
        return None

    async def _run_batches(self, blockchain: Blockchain, prepared: _Prepared) -> BatchProcessingResult:
        config = BatchProcessingConfig.from_automation_config(prepared.config, self.parallel_batches)
        result = await self.batch_scheduler.run(prepared.selection.selected_contracts, config, blockchain=blockchain)
        self.last_batch_results[blockchain.id] = result
        return result

    async def _evaluate_alerts(
        self,
        blockchain: Blockchain,
        result: PollResult,
        prepared: _Prepared,
    ) -> list[AlertTrigger]:
        evicted = result.evicted_addresses
        by_user: dict[str, AlertConditions] = {}
        for contract in prepared.contracts:
            user = contract.owner_user_id.lower()
            address = contract.address.lower()
            conditions = by_user.get(user)
            if conditions is None:
                conditions = AlertConditions(
                    user_id=user,
                    blockchain_id=blockchain.id,
                    gas_balance=result.user_balances.get(user),
                )
                by_user[user] = conditions
            if address in evicted:
                conditions.evicted_contracts.add(address)
            if address in prepared.assessments:
                conditions.bid_assessments.append(prepared.assessments[address])
            if address in result.contract_states:
                conditions.contract_states[address] = result.contract_states[address]

        for user in sorted(by_user):
            self.alert_engine.submit(by_user[user])
        return await self.alert_engine.process_pending()
