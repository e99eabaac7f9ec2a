"""
Escrow business handler - routes decoded escrow events to their handlers.
"""

from typing import Awaitable, Callable, Dict, Type

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chain_indexer.core.exceptions import BusinessLogicError
from chain_indexer.indexer.core.events import (
    EventPayload,
    ProceedsReceived,
    PaidFunder,
    PaidPlatform,
    PaidSteward,
    UnitsSold,
    MarketWindowOpened,
    MarketWindowExtended,
)

from .allocation_handlers import AllocationHandlers
from .base import BusinessHandler, EventEnvelope, HandlerResult
from .repayment_handlers import RepaymentHandlers


logger = structlog.get_logger(__name__)

EventHandlerFn = Callable[[AsyncSession, EventEnvelope], Awaitable[None]]


class EscrowEventHandler(BusinessHandler):
    """
    BusinessHandler for the repayment and allocation escrow contracts.

    Each event is applied in its own transaction. A BusinessLogicError
    rolls the transaction back and is reported as a failed result so the
    event is picked up again by the retry sweep.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.logger = logger.bind(service="escrow_handler")

        self._repayment_handlers = RepaymentHandlers()
        self._allocation_handlers = AllocationHandlers()

        self._event_handlers: Dict[Type[EventPayload], EventHandlerFn] = {}
        self._setup_event_handlers()

    def _setup_event_handlers(self):
        """Setup payload type to handler mappings."""
        self._event_handlers = {
            # RepaymentEscrow
            ProceedsReceived: self._repayment_handlers.handle_proceeds_received,
            PaidFunder: self._repayment_handlers.handle_paid_funder,
            PaidPlatform: self._repayment_handlers.handle_paid_platform,
            PaidSteward: self._repayment_handlers.handle_paid_steward,

            # AllocationEscrow
            UnitsSold: self._allocation_handlers.handle_units_sold,
            MarketWindowOpened: self._allocation_handlers.handle_market_window_opened,
            MarketWindowExtended: self._allocation_handlers.handle_market_window_extended,
        }

    async def apply(self, envelope: EventEnvelope) -> HandlerResult:
        handler = self._event_handlers.get(type(envelope.payload))
        if handler is None:
            self.logger.debug(
                "No handler for event",
                event_name=envelope.event_name,
                event_id=envelope.event_id
            )
            return HandlerResult.ok()

        async with self.session_factory() as db:
            try:
                await handler(db, envelope)
                await db.commit()
            except BusinessLogicError as e:
                await db.rollback()
                self.logger.warning(
                    "Business logic rejected event",
                    event_name=envelope.event_name,
                    event_id=envelope.event_id,
                    error=e.message,
                    code=e.code
                )
                return HandlerResult.failed(e.message)

        return HandlerResult.ok()
