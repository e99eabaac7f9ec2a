"""
Database models for the chain event indexer.

Contains the indexer's own state (cursors and the indexed event log) and
the payment bookkeeping tables written by the escrow handlers.
"""

from .base import Base, BaseModel, TimestampMixin
from .indexer_state import IndexerState
from .indexed_event import IndexedEvent, EventStatus
from .payment import (
    Payment, PaymentEvent, LiftUnit,
    PaymentType, PaymentStatus, PaymentEventType, LiftUnitStatus
)

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "IndexerState",
    "IndexedEvent",
    "EventStatus",
    "Payment",
    "PaymentEvent",
    "LiftUnit",
    "PaymentType",
    "PaymentStatus",
    "PaymentEventType",
    "LiftUnitStatus",
]
