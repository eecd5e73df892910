"""Records produced by a polling cycle."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from constants import EVENT_DELETE_BID, EVENT_INSERT_BID


@dataclass(slots=True, frozen=True)
class ChainEvent:
    """A decoded cache manager log."""
    name: str
    block_number: int
    log_index: int
    transaction_hash: str
    code_hash: Optional[str] = None
    contract_address: Optional[str] = None
    bid: Optional[int] = None
    size: Optional[int] = None
    block_timestamp: Optional[int] = None  # unix seconds, set for InsertBid
    args: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_eviction(self) -> bool:
        return self.name == EVENT_DELETE_BID

    @property
    def is_bid(self) -> bool:
        return self.name == EVENT_INSERT_BID

    @property
    def sort_key(self) -> tuple[int, int]:
        return self.block_number, self.log_index


@dataclass(slots=True, frozen=True)
class ContractState:
    address: str
    code_hash: str
    code_size: int
    is_cached: bool
    # decayed bid while cached; None when cached but no bid is on record
    current_bid: Optional[int]
    min_bid: int


@dataclass(slots=True, frozen=True)
class CacheManagerState:
    cache_size: int
    queue_size: int
    decay_rate: int
    is_paused: bool

    @property
    def utilization(self) -> int:
        """Queue size as an integer percentage of cache size."""
        if self.cache_size <= 0:
            return 0
        return (self.queue_size * 100) // self.cache_size


@dataclass(slots=True)
class PollResult:
    blockchain_id: str
    success: bool
    from_block: int = 0
    to_block: int = 0
    events: list[ChainEvent] = field(default_factory=list)
    contract_states: dict[str, ContractState] = field(default_factory=dict)
    fetch_errors: dict[str, str] = field(default_factory=dict)
    cache_manager: Optional[CacheManagerState] = None
    user_balances: dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    skipped: bool = False

    @property
    def evicted_code_hashes(self) -> set[str]:
        return {event.code_hash for event in self.events if event.is_eviction and event.code_hash}

    @property
    def evicted_addresses(self) -> set[str]:
        """Addresses evicted in this range, resolved through polled code hashes when the log lacks one."""
        hashes = self.evicted_code_hashes
        addresses = {
            event.contract_address for event in self.events
            if event.is_eviction and event.contract_address
        }
        for address, state in self.contract_states.items():
            if state.code_hash in hashes:
                addresses.add(address)
        return addresses


@dataclass(slots=True)
class PollingMetrics:
    blockchain_id: str
    total_polls: int = 0
    successful_polls: int = 0
    failed_polls: int = 0
    average_polling_time: float = 0.0
    last_polling_time: Optional[datetime] = None
    last_successful_poll: Optional[datetime] = None
    last_failed_poll: Optional[datetime] = None
    success_rate: float = 0.0


def decayed_bid(bid: int, placed_at: Optional[int], now: int, decay_rate: int) -> int:
    """Bid left after `decay_rate` wei per second since `placed_at`, floored at zero."""
    elapsed = max(now - placed_at, 0) if placed_at is not None else 0
    return max(bid - elapsed * decay_rate, 0)
