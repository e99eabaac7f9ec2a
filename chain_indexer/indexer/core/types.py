"""
Core types for event indexing.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from chain_indexer.core.config import IndexerConfig


class IndexerStatus(Enum):
    """Status of a poller or of the supervisor."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class SchemaKind(str, Enum):
    """Event schemas the indexer knows how to decode."""
    REPAYMENT_ESCROW = "RepaymentEscrow"
    ALLOCATION_ESCROW = "AllocationEscrow"
    LIFT_UNITS = "LiftUnits"


# (network_id, lowercase contract address, schema kind value)
SourceKey = Tuple[int, str, str]


class SourceConfig(BaseModel):
    """One indexed (network, contract, schema kind) source and its tunables."""

    model_config = ConfigDict(frozen=True)

    network_id: int = Field(gt=0)
    contract_address: str = Field(pattern=r"^0x[a-fA-F0-9]{40}$")
    schema_kind: SchemaKind
    start_height: int = Field(default=0, ge=0)
    confirmations: int = Field(
        default=IndexerConfig.DEFAULT_CONFIRMATIONS,
        ge=1,
        le=IndexerConfig.MAX_CONFIRMATIONS
    )
    batch_size: int = Field(
        default=IndexerConfig.DEFAULT_BATCH_SIZE,
        ge=1,
        le=IndexerConfig.MAX_BATCH_SIZE
    )

    @field_validator("contract_address")
    @classmethod
    def normalize_address(cls, v: str) -> str:
        return v.lower()

    @property
    def key(self) -> SourceKey:
        return (self.network_id, self.contract_address, self.schema_kind.value)

    @property
    def label(self) -> str:
        return f"{self.network_id}:{self.contract_address}:{self.schema_kind.value}"


@dataclass(frozen=True)
class RawLog:
    """A log entry as returned by the chain reader."""
    tx_hash: str
    log_index: int
    block_number: int
    block_hash: str
    topics: List[str]
    data: str
    tx_index: int = 0
    address: Optional[str] = None

    @property
    def signature(self) -> Optional[str]:
        return self.topics[0] if self.topics else None


@dataclass(frozen=True)
class ScanRange:
    """Inclusive block range chosen for one tick."""
    from_height: int
    to_height: int
    confirmed_height: int

    @property
    def size(self) -> int:
        return self.to_height - self.from_height + 1


class TickOutcome(Enum):
    """How a single poller tick ended."""
    NO_NEW_RANGE = "no_new_range"
    ADVANCED = "advanced"
    FAILED = "failed"
    SKIPPED_BUSY = "skipped_busy"
    INACTIVE = "inactive"


@dataclass
class TickResult:
    """Result of one scan tick."""
    outcome: TickOutcome
    scan_range: Optional[ScanRange] = None
    logs_fetched: int = 0
    events_stored: int = 0
    duplicates: int = 0
    unknown: int = 0
    processed: int = 0
    failed: int = 0
    error: Optional[str] = None

    @property
    def last_height(self) -> Optional[int]:
        return self.scan_range.to_height if self.scan_range else None


@dataclass
class ProcessingStats:
    """Running statistics for one poller."""
    ticks: int = 0
    ticks_failed: int = 0
    ticks_skipped: int = 0
    logs_fetched: int = 0
    events_stored: int = 0
    duplicates: int = 0
    unknown_events: int = 0
    events_processed: int = 0
    events_failed: int = 0
    last_processed_height: Optional[int] = None
    start_time: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    recent_errors: List[str] = field(default_factory=list)

    def record(self, result: TickResult, at: datetime) -> None:
        self.last_tick_at = at
        if result.outcome == TickOutcome.SKIPPED_BUSY:
            self.ticks_skipped += 1
            return
        self.ticks += 1
        self.logs_fetched += result.logs_fetched
        self.events_stored += result.events_stored
        self.duplicates += result.duplicates
        self.unknown_events += result.unknown
        self.events_processed += result.processed
        self.events_failed += result.failed
        if result.outcome == TickOutcome.ADVANCED:
            self.last_processed_height = result.last_height
        elif result.outcome == TickOutcome.FAILED:
            self.ticks_failed += 1
            self.recent_errors = (self.recent_errors + [result.error or ""])[-10:]
