"""
Payment bookkeeping models driven by escrow contract events.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, Index, JSON, ForeignKey, UniqueConstraint,
    Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class PaymentType(Enum):
    LIFT_UNIT_PURCHASE = "lift_unit_purchase"
    PROJECT_FUNDING = "project_funding"
    REPAYMENT = "repayment"
    PLATFORM_FEE = "platform_fee"
    STEWARD_PAYMENT = "steward_payment"


class PaymentStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_ESCROW = "in_escrow"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentEventType(Enum):
    PROCEEDS_NOTIFIED = "proceeds_notified"
    UNITS_SOLD = "units_sold"


class LiftUnitStatus(Enum):
    AVAILABLE = "available"
    SOLD = "sold"
    RETIRED = "retired"


class Payment(BaseModel, TimestampMixin):
    """A payment tracked across its on-chain escrow lifecycle."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    payment_type: Mapped[PaymentType] = mapped_column(SQLEnum(PaymentType))

    project_id: Mapped[int] = mapped_column(BigInteger)

    # uint256 amounts kept as decimal strings
    amount: Mapped[str] = mapped_column(String(80))

    payment_token: Mapped[str] = mapped_column(String(42))

    network_id: Mapped[int] = mapped_column(Integer)

    payer_address: Mapped[str] = mapped_column(String(42))

    recipient_address: Mapped[str] = mapped_column(String(42))

    consideration_ref: Mapped[Optional[str]] = mapped_column(
        String(66),
        nullable=True,
        comment="bytes32 reference linking escrow events to this payment"
    )

    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus),
        default=PaymentStatus.PENDING
    )

    proceeds_notified: Mapped[bool] = mapped_column(Boolean, default=False)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_payment_project_ref", "project_id", "consideration_ref"),
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, project={self.project_id}, status={self.status.value})>"


class PaymentEvent(BaseModel, TimestampMixin):
    """Ledger entry tying a payment state change to the indexed event that caused it."""

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"))

    indexed_event_id: Mapped[int] = mapped_column(ForeignKey("indexed_events.id"))

    event_type: Mapped[PaymentEventType] = mapped_column(SQLEnum(PaymentEventType))

    amount: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("indexed_event_id", "event_type", name="uq_payment_event_source"),
    )


class LiftUnit(BaseModel, TimestampMixin):
    """A tokenized unit sold through the allocation escrow."""

    __tablename__ = "lift_units"

    token_id: Mapped[str] = mapped_column(String(80), primary_key=True)

    project_id: Mapped[int] = mapped_column(BigInteger)

    status: Mapped[LiftUnitStatus] = mapped_column(
        SQLEnum(LiftUnitStatus),
        default=LiftUnitStatus.AVAILABLE
    )

    quantity: Mapped[str] = mapped_column(String(80), default="0")

    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<LiftUnit(token_id={self.token_id}, status={self.status.value})>"
