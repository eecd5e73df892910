"""Eligibility classification for automated re-bids."""
from __future__ import annotations

import logging
from typing import Iterable, Mapping

import constants
from automation.models import BidAssessment, ContractSelectionResult, SelectedContract
from polling.models import ContractState
from storage.models import ContractSelectionCriteria, MonitoredContract

DISABLED = 'disabled'
ALREADY_CACHED = 'alreadyCached'
FETCH_ERROR = 'fetchError'
BID_INELIGIBLE = 'bidIneligible'

logger = logging.getLogger(__name__)


def is_near_eviction(state: ContractState, margin_bps: int) -> bool:
    """True when the cached bid sits within `margin_bps` of the current minimum bid."""
    if state.current_bid is None:
        return False
    base = constants.BID_SAFETY_BASE_PERCENTAGE
    return state.current_bid * base < state.min_bid * (base + margin_bps)


class ContractSelector:
    def __init__(self, eviction_margin_bps: int = constants.DEFAULT_EVICTION_MARGIN_BPS) -> None:
        self.eviction_margin_bps = eviction_margin_bps

    def select(
        self,
        contracts: Iterable[MonitoredContract],
        criteria: Mapping[str, ContractSelectionCriteria],
        states: Mapping[str, ContractState],
    ) -> ContractSelectionResult:
        """
        Classifies every contract exactly once, in this order: disabled,
        already cached (and not near eviction), no state this cycle, selected.
        Addresses are compared lower-cased.
        """
        criteria_by_address = {address.lower(): value for address, value in criteria.items()}
        states_by_address = {address.lower(): value for address, value in states.items()}
        result = ContractSelectionResult()

        for contract in contracts:
            address = contract.address.lower()
            result.total_processed += 1

            contract_criteria = criteria_by_address.get(address)
            if contract_criteria is None or not contract_criteria.enabled:
                result.skip_reasons.disabled += 1
                result.skipped[address] = DISABLED
                continue

            state = states_by_address.get(address)
            if state is not None and state.is_cached and not is_near_eviction(state, self.eviction_margin_bps):
                result.skip_reasons.already_cached += 1
                result.skipped[address] = ALREADY_CACHED
                continue

            if state is None:
                result.skip_reasons.fetch_error += 1
                result.skipped[address] = FETCH_ERROR
                continue

            result.selected_contracts.append(SelectedContract(user=contract.owner_user_id, address=address))

        logger.debug(
            "Selected %s of %s contracts (disabled=%s cached=%s fetchError=%s)",
            result.total_eligible, result.total_processed, result.skip_reasons.disabled,
            result.skip_reasons.already_cached, result.skip_reasons.fetch_error,
        )
        return result

    @staticmethod
    def exclude_ineligible(
        result: ContractSelectionResult,
        assessments: Mapping[str, BidAssessment],
    ) -> ContractSelectionResult:
        """Moves selected contracts whose bid assessment failed into the bidIneligible bucket."""
        kept: list[SelectedContract] = []
        for selected in result.selected_contracts:
            assessment = assessments.get(selected.address)
            if assessment is not None and not assessment.is_eligible:
                result.skip_reasons.bid_ineligible += 1
                result.skipped[selected.address] = BID_INELIGIBLE
                continue
            kept.append(selected)
        result.selected_contracts = kept
        return result
