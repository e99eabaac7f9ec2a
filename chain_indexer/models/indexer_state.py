"""
Indexer state model - the persisted cursor of one indexed source.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, Text, UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class IndexerState(BaseModel, TimestampMixin):
    """Cursor record for a (network, contract, schema kind) source."""

    __tablename__ = "indexer_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Source identity
    network_id: Mapped[int] = mapped_column(
        Integer,
        comment="Chain / network id"
    )

    contract_address: Mapped[str] = mapped_column(
        String(42),
        comment="Lowercase contract address"
    )

    schema_kind: Mapped[str] = mapped_column(
        String(32),
        comment="Event schema the source is decoded with"
    )

    # Tunables as configured when the cursor was created
    start_height: Mapped[int] = mapped_column(BigInteger, default=0)
    confirmations: Mapped[int] = mapped_column(Integer, default=12)
    batch_size: Mapped[int] = mapped_column(Integer, default=1000)

    # Progress
    last_processed_height: Mapped[int] = mapped_column(
        BigInteger,
        default=-1,
        comment="Highest block fully ingested"
    )

    last_sync_at: Mapped[Optional[datetime]] = mapped_column(
        nullable=True,
        comment="Last successful scan"
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Error tracking
    error_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Consecutive failed scans"
    )

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    last_error_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "network_id", "contract_address", "schema_kind",
            name="uq_indexer_state_source"
        ),
        Index("idx_indexer_state_active", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<IndexerState(network={self.network_id}, contract={self.contract_address}, "
            f"kind={self.schema_kind}, height={self.last_processed_height})>"
        )

    @property
    def source_key(self) -> str:
        return f"{self.network_id}:{self.contract_address}:{self.schema_kind}"

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0
