"""
Business handler contract.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from chain_indexer.indexer.core.events import EventPayload


@dataclass(frozen=True)
class EventEnvelope:
    """A stored event handed to a business handler."""
    event_id: int
    network_id: int
    contract_address: str
    schema_kind: str
    event_name: str
    block_number: int
    tx_hash: str
    log_index: int
    block_timestamp: Optional[datetime]
    payload: EventPayload


@dataclass(frozen=True)
class HandlerResult:
    success: bool
    error: Optional[str] = None

    @classmethod
    def ok(cls) -> "HandlerResult":
        return cls(success=True)

    @classmethod
    def failed(cls, message: str) -> "HandlerResult":
        return cls(success=False, error=message)


class BusinessHandler(ABC):
    """
    Applies the side effects of a decoded event.

    apply() must be idempotent: the same envelope may be delivered more
    than once (after a crash, or from the retry sweep) and must leave the
    same end state. Raising is treated the same as returning a failure.
    """

    @abstractmethod
    async def apply(self, envelope: EventEnvelope) -> HandlerResult:
        ...

    async def close(self) -> None:
        """Release resources held by the handler."""
