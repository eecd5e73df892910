from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from automation.models import BidAssessment
from polling.models import ContractState
from storage.models import AlertType


@dataclass(slots=True)
class AlertConditions:
    """What one polling cycle tells us about one user."""
    user_id: str
    blockchain_id: Optional[str] = None
    evicted_contracts: set[str] = field(default_factory=set)
    gas_balance: Optional[int] = None  # None when the balance could not be read
    bid_assessments: list[BidAssessment] = field(default_factory=list)
    contract_states: dict[str, ContractState] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class AlertTrigger:
    alert_id: str
    user_id: str
    alert_type: AlertType
    triggered_at: datetime
    triggered_count: int
    details: str
    contracts: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class NotificationRequest:
    alert_id: str
    alert_type: AlertType
    channel: str
    user_id: str
    message: str
    priority: str
    destination: Optional[str] = None
