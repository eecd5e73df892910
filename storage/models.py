"""Dataclasses representing stored monitor records."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from errors import InvalidCriteriaError


@dataclass(slots=True)
class Blockchain:
    id: str
    name: str
    rpc_url: str
    chain_id: int
    cache_manager_address: str
    arb_wasm_cache_address: str
    cache_manager_automation_address: Optional[str] = None
    last_synced_block: int = 0
    enabled: bool = True
    settings: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MonitoredContract:
    address: str
    blockchain_id: str
    owner_user_id: str
    name: Optional[str] = None


@dataclass(slots=True, frozen=True)
class ContractSelectionCriteria:
    contract_address: str
    min_bid: int
    max_bid: int
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.min_bid < 0 or self.max_bid < 0:
            raise InvalidCriteriaError(
                f"Bid bounds for {self.contract_address} must be non-negative (min={self.min_bid}, max={self.max_bid})"
            )
        if self.min_bid > self.max_bid:
            raise InvalidCriteriaError(
                f"Bid bounds for {self.contract_address} are inverted (min={self.min_bid} > max={self.max_bid})"
            )


@dataclass(slots=True, frozen=True)
class ContractBid:
    """Most recent InsertBid seen for a code hash on one blockchain."""
    blockchain_id: str
    code_hash: str
    bid: int
    bid_block_timestamp: Optional[int]
    block_number: int
    log_index: int


class AlertType(str, Enum):
    EVICTION = 'eviction'
    NO_GAS = 'noGas'
    LOW_GAS = 'lowGas'
    BID_SAFETY = 'bidSafety'


# Critical first; also the evaluation order for one trigger input.
ALERT_TYPE_ORDER = (AlertType.EVICTION, AlertType.NO_GAS, AlertType.LOW_GAS, AlertType.BID_SAFETY)

ALERT_TYPE_PRIORITY = {
    AlertType.EVICTION: 'critical',
    AlertType.NO_GAS: 'high',
    AlertType.LOW_GAS: 'medium',
    AlertType.BID_SAFETY: 'high',
}


class AlertStatus(str, Enum):
    ACTIVE = 'active'
    TRIGGERED = 'triggered'
    PAUSED = 'paused'


@dataclass(slots=True)
class AlertChannels:
    email: bool = False
    slack: bool = False
    telegram: bool = False
    webhook: bool = False

    def enabled(self) -> list[str]:
        return [name for name in ('email', 'slack', 'telegram', 'webhook') if getattr(self, name)]


@dataclass(slots=True)
class Alert:
    id: str
    user_id: str
    type: AlertType
    value: Optional[str] = None
    is_active: bool = True
    status: AlertStatus = AlertStatus.ACTIVE
    triggered_count: int = 0
    channels: AlertChannels = field(default_factory=AlertChannels)
    last_triggered_at: Optional[datetime] = None
    # channel name -> destination (chat id, webhook url, email address)
    destinations: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class PollingSession:
    blockchain_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    data_points: int = 0
