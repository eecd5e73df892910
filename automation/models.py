"""Selection, assessment and batch run records for the bid automation path."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import constants
from config import AutomationConfig


@dataclass(slots=True, frozen=True)
class SelectedContract:
    user: str
    address: str


@dataclass(slots=True)
class SkipReasons:
    disabled: int = 0
    already_cached: int = 0
    fetch_error: int = 0
    bid_ineligible: int = 0


@dataclass(slots=True)
class ContractSelectionResult:
    selected_contracts: list[SelectedContract] = field(default_factory=list)
    total_processed: int = 0
    skip_reasons: SkipReasons = field(default_factory=SkipReasons)
    # address -> reason code, for every contract that was not selected
    skipped: dict[str, str] = field(default_factory=dict)

    @property
    def total_eligible(self) -> int:
        return len(self.selected_contracts)


@dataclass(slots=True, frozen=True)
class BidAssessment:
    contract_address: str
    min_bid: int
    max_bid: int
    proposed_bid: int
    current_market_bid: int
    margin_bps: Optional[int]
    is_eligible: bool
    reason: Optional[str] = None


@dataclass(slots=True, frozen=True)
class BatchProcessingConfig:
    batch_size: int = constants.DEFAULT_BATCH_SIZE
    max_retries: int = constants.DEFAULT_MAX_RETRIES
    retry_delay: float = constants.DEFAULT_RETRY_DELAY_MS / 1000  # seconds
    processing_timeout: float = constants.DEFAULT_PROCESSING_TIMEOUT_MS / 1000  # seconds
    parallel_batches: int = 1

    @classmethod
    def from_automation_config(cls, config: AutomationConfig, parallel_batches: int = 1) -> "BatchProcessingConfig":
        return cls(
            batch_size=config.batch_size,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay_seconds,
            processing_timeout=config.processing_timeout_seconds,
            parallel_batches=parallel_batches,
        )


@dataclass(slots=True)
class BatchQueueItem:
    contracts: list[SelectedContract]
    batch_index: int
    retry_count: int = 0
    priority: int = 0
    created_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None


@dataclass(slots=True)
class BatchResult:
    batch_index: int
    success: bool
    processed_contracts: int
    retry_count: int
    duration: float
    transaction_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class BatchProcessingResult:
    total_batches: int
    successful_batches: int
    failed_batches: int
    total_contracts: int
    processed_contracts: int
    results: list[BatchResult]
    start_time: datetime
    end_time: datetime
    total_duration: float
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed_batches == 0


@dataclass(slots=True)
class AutomationStats:
    total_blockchains: int = 0
    processed_blockchains: int = 0
    total_contracts: int = 0
    processed_contracts: int = 0
    successful_batches: int = 0
    failed_batches: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0


@dataclass(slots=True)
class AutomationError:
    blockchain: str
    error: str
    timestamp: datetime


@dataclass(slots=True)
class AutomationResult:
    success: bool
    stats: AutomationStats
    errors: list[AutomationError] = field(default_factory=list)
