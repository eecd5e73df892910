from typing import Optional

import pytest

from automation.bid_assessor import assess
from automation.contract_selector import ContractSelector, is_near_eviction
from automation.models import SelectedContract
from errors import InvalidCriteriaError
from polling.models import ContractState
from storage.models import ContractSelectionCriteria, MonitoredContract

USER = '0x' + '11' * 20


def address(n: int) -> str:
    return '0x' + f'{n:040x}'


def contract(n: int) -> MonitoredContract:
    return MonitoredContract(address=address(n), blockchain_id='arb-one', owner_user_id=USER)


def state(n: int, *, cached: bool = False, current_bid: Optional[int] = 0, min_bid: int = 100) -> ContractState:
    return ContractState(
        address=address(n),
        code_hash=f'0xhash{n}',
        code_size=1024,
        is_cached=cached,
        current_bid=current_bid,
        min_bid=min_bid,
    )


def crit(n: int, enabled: bool = True) -> ContractSelectionCriteria:
    return ContractSelectionCriteria(contract_address=address(n), min_bid=0, max_bid=10**18, enabled=enabled)


def test_classification_is_exclusive_and_ordered():
    contracts = [contract(i) for i in range(1, 6)]
    criteria = {
        address(1): crit(1, enabled=False),  # disabled even though state is missing
        address(2): crit(2),                 # cached, far from eviction
        address(3): crit(3),                 # no state this cycle
        address(4): crit(4),                 # not cached
        # 5 has no criteria at all
    }
    states = {
        address(2): state(2, cached=True, current_bid=1000, min_bid=100),
        address(4): state(4),
        address(5): state(5),
    }

    result = ContractSelector().select(contracts, criteria, states)

    assert result.total_processed == 5
    assert result.selected_contracts == [SelectedContract(user=USER, address=address(4))]
    assert result.total_eligible == 1
    assert result.skip_reasons.disabled == 2
    assert result.skip_reasons.already_cached == 1
    assert result.skip_reasons.fetch_error == 1
    assert result.skipped[address(1)] == 'disabled'
    assert result.skipped[address(2)] == 'alreadyCached'
    assert result.skipped[address(3)] == 'fetchError'


def test_cached_contract_near_eviction_is_selected():
    contracts = [contract(1)]
    # 105 is within 10% of the 100 minimum bid
    states = {address(1): state(1, cached=True, current_bid=105, min_bid=100)}

    result = ContractSelector(eviction_margin_bps=1000).select(contracts, {address(1): crit(1)}, states)

    assert [c.address for c in result.selected_contracts] == [address(1)]


def test_near_eviction_boundary():
    assert is_near_eviction(state(1, cached=True, current_bid=109, min_bid=100), 1000) is True
    assert is_near_eviction(state(1, cached=True, current_bid=110, min_bid=100), 1000) is False


def test_unknown_cached_bid_counts_as_already_cached():
    assert is_near_eviction(state(1, cached=True, current_bid=None, min_bid=100), 1000) is False

    result = ContractSelector().select([contract(1)], {address(1): crit(1)}, {address(1): state(1, cached=True, current_bid=None)})

    assert result.skip_reasons.already_cached == 1
    assert result.skipped[address(1)] == 'alreadyCached'


def test_addresses_match_case_insensitively():
    mixed = address(7).upper().replace('0X', '0x')
    contracts = [MonitoredContract(address=mixed, blockchain_id='arb-one', owner_user_id=USER)]
    criteria = {mixed: ContractSelectionCriteria(contract_address=mixed, min_bid=0, max_bid=10)}
    states = {address(7): state(7)}

    result = ContractSelector().select(contracts, criteria, states)

    assert result.selected_contracts[0].address == address(7)


def test_exclude_ineligible_moves_to_bid_ineligible():
    contracts = [contract(1), contract(2)]
    criteria = {address(1): crit(1), address(2): crit(2)}
    states = {address(1): state(1), address(2): state(2)}
    selector = ContractSelector()
    result = selector.select(contracts, criteria, states)

    tight = ContractSelectionCriteria(contract_address=address(2), min_bid=0, max_bid=50)
    assessments = {
        address(1): assess(address(1), crit(1), current_market_bid=100),
        address(2): assess(address(2), tight, current_market_bid=100),
    }
    selector.exclude_ineligible(result, assessments)

    assert [c.address for c in result.selected_contracts] == [address(1)]
    assert result.skip_reasons.bid_ineligible == 1
    assert result.skipped[address(2)] == 'bidIneligible'


@pytest.mark.parametrize("min_bid, max_bid", [(-1, 10), (0, -1), (11, 10)])
def test_invalid_criteria_rejected(min_bid, max_bid):
    with pytest.raises(InvalidCriteriaError):
        ContractSelectionCriteria(contract_address=address(1), min_bid=min_bid, max_bid=max_bid)
