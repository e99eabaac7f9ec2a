"""
Business handlers for indexed events.
"""

from .base import BusinessHandler, EventEnvelope, HandlerResult
from .repayment_handlers import RepaymentHandlers
from .allocation_handlers import AllocationHandlers
from .escrow_handler import EscrowEventHandler

__all__ = [
    "BusinessHandler",
    "EventEnvelope",
    "HandlerResult",
    "RepaymentHandlers",
    "AllocationHandlers",
    "EscrowEventHandler",
]
