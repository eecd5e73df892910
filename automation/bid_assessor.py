"""
Bid safety in integer basis points (10000 = 100%).

Everything here is pure: no chain reads, no persistence. Amounts are wei as
Python ints, so no precision is lost however large a bid gets.
"""
from __future__ import annotations

from typing import Optional

import constants
from automation.models import BidAssessment
from storage.models import ContractSelectionCriteria, MonitoredContract

BASE = constants.BID_SAFETY_BASE_PERCENTAGE
MIN_MARGIN_BPS = constants.MIN_BID_SAFETY_VALUE * 100
MAX_MARGIN_BPS = constants.MAX_BID_SAFETY_VALUE * 100

REASON_BELOW_MIN_BID = 'bid below minimum bid'
REASON_ABOVE_MAX_BID = 'bid above maximum bid'
REASON_BELOW_MARGIN = 'bid below safety margin'
REASON_ABOVE_MARGIN = 'bid above safety margin'


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def smallest_safe_bid(min_bid: int, current_market_bid: int) -> int:
    """Lowest bid that is both >= min_bid and at least MIN_MARGIN_BPS over the market."""
    if current_market_bid <= 0:
        return min_bid
    return max(min_bid, _ceil_div(current_market_bid * (BASE + MIN_MARGIN_BPS), BASE))


def margin_bps(proposed_bid: int, current_market_bid: int) -> Optional[int]:
    """Floor of the margin in bps, for display. None when the market bid is zero."""
    if current_market_bid <= 0:
        return None
    return (proposed_bid - current_market_bid) * BASE // current_market_bid


def assess(
    contract: MonitoredContract | str,
    criteria: ContractSelectionCriteria,
    current_market_bid: int,
    proposed_bid: Optional[int] = None,
) -> BidAssessment:
    address = contract if isinstance(contract, str) else contract.address
    if proposed_bid is None:
        proposed_bid = smallest_safe_bid(criteria.min_bid, current_market_bid)

    reason: Optional[str] = None
    if proposed_bid < criteria.min_bid:
        reason = REASON_BELOW_MIN_BID
    elif proposed_bid > criteria.max_bid:
        reason = REASON_ABOVE_MAX_BID
    elif current_market_bid > 0:
        # margin = (proposed - market) * BASE / market, compared without dividing
        scaled = proposed_bid * BASE
        if scaled < current_market_bid * (BASE + MIN_MARGIN_BPS):
            reason = REASON_BELOW_MARGIN
        elif scaled > current_market_bid * (BASE + MAX_MARGIN_BPS):
            reason = REASON_ABOVE_MARGIN

    return BidAssessment(
        contract_address=address.lower(),
        min_bid=criteria.min_bid,
        max_bid=criteria.max_bid,
        proposed_bid=proposed_bid,
        current_market_bid=current_market_bid,
        margin_bps=margin_bps(proposed_bid, current_market_bid),
        is_eligible=reason is None,
        reason=reason,
    )


def calculate_bid_amount(
    max_bid: int,
    bid_index: int,
    min_bid: int,
    cache_utilization: int,
    decay_rate: int = constants.DEFAULT_DECAY_RATE,
) -> int:
    """
    Bid the automation contract would place for one entry.

    Below CACHE_THRESHOLD_PCT utilization the minimum bid is enough. Above it
    the bid covers a horizon of decay plus a small per-position increment so
    entries in the same batch do not tie, capped at the user's maximum.
    """
    if cache_utilization < constants.CACHE_THRESHOLD_PCT:
        return min_bid
    bid = min_bid + decay_rate * constants.HORIZON_SECONDS + bid_index * constants.BID_INCREMENT
    return min(bid, max_bid)


def bid_safety_threshold(min_bid: int, safety_percent: int) -> int:
    return min_bid * (BASE + safety_percent * 100) // BASE


def is_bid_unsafe(effective_bid: int, min_bid: int, safety_percent: int) -> bool:
    return effective_bid < bid_safety_threshold(min_bid, safety_percent)
