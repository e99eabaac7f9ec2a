"""
Indexed event model - stores every on-chain log the indexer has observed.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, Text, Index, JSON,
    UniqueConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class EventStatus(Enum):
    """Business processing status of an indexed event."""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    NEEDS_INTERVENTION = "needs_intervention"
    SKIPPED = "skipped"


class IndexedEvent(BaseModel, TimestampMixin):
    """Durable audit record of one decoded (or undecodable) log."""

    __tablename__ = "indexed_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Dedup key: (network_id, tx_hash, log_index)
    network_id: Mapped[int] = mapped_column(Integer, comment="Chain / network id")

    tx_hash: Mapped[str] = mapped_column(String(66), comment="Transaction hash")

    log_index: Mapped[int] = mapped_column(Integer, comment="Log index within block")

    # Source
    contract_address: Mapped[str] = mapped_column(
        String(42),
        comment="Lowercase emitting contract"
    )

    schema_kind: Mapped[str] = mapped_column(
        String(32),
        comment="Schema the log was decoded with"
    )

    event_name: Mapped[str] = mapped_column(
        String(64),
        comment="Decoded event name or Unknown"
    )

    event_signature: Mapped[Optional[str]] = mapped_column(
        String(66),
        nullable=True,
        comment="First topic"
    )

    # Blockchain data
    block_number: Mapped[int] = mapped_column(BigInteger)

    block_hash: Mapped[str] = mapped_column(String(66))

    block_timestamp: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    tx_index: Mapped[int] = mapped_column(Integer, default=0)

    topics: Mapped[List[str]] = mapped_column(JSON, comment="Raw topics")

    data: Mapped[str] = mapped_column(Text, comment="Raw data, 0x-hex")

    decoded_args: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        comment="JSON rendering of the typed payload"
    )

    # Processing state
    status: Mapped[EventStatus] = mapped_column(
        SQLEnum(EventStatus),
        default=EventStatus.PENDING,
        comment="Processing status"
    )

    processed: Mapped[bool] = mapped_column(Boolean, default=False)

    processed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    retry_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Number of failed handler attempts"
    )

    __table_args__ = (
        UniqueConstraint("network_id", "tx_hash", "log_index", name="uq_indexed_event_log"),
        Index("idx_indexed_event_contract_block", "contract_address", "block_number"),
        Index("idx_indexed_event_name", "event_name"),
        Index("idx_indexed_event_retry", "processed", "retry_count"),
        Index("idx_indexed_event_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<IndexedEvent(id={self.id}, name={self.event_name}, "
            f"tx={self.tx_hash[:10]}..., log={self.log_index})>"
        )

    @property
    def is_unknown(self) -> bool:
        return self.status == EventStatus.SKIPPED

    @property
    def needs_intervention(self) -> bool:
        return self.status == EventStatus.NEEDS_INTERVENTION

    def can_retry(self, max_retries: int = 3) -> bool:
        """Check if event is eligible for the retry sweep."""
        return (
            not self.processed
            and self.processing_error is not None
            and self.retry_count < max_retries
        )
