"""
Event handlers for the allocation escrow contract.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chain_indexer.core.exceptions import BusinessLogicError
from chain_indexer.indexer.core.events import (
    UnitsSold, MarketWindowOpened, MarketWindowExtended
)
from chain_indexer.models.base import utcnow
from chain_indexer.models.payment import (
    Payment, PaymentEvent, LiftUnit,
    PaymentType, PaymentStatus, PaymentEventType, LiftUnitStatus
)

from .base import EventEnvelope


logger = structlog.get_logger(__name__)

# Proceeds are paid in the native currency
NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"


class AllocationHandlers:
    """
    Handles AllocationEscrow events.
    """

    def __init__(self):
        self.logger = logger.bind(service="allocation_handlers")

    async def handle_units_sold(self, db: AsyncSession, envelope: EventEnvelope):
        """Confirm the purchase payment and mark every sold unit."""
        event: UnitsSold = envelope.payload

        if len(event.token_ids) != len(event.amounts):
            raise BusinessLogicError(
                "UnitsSold token ids and amounts differ in length",
                {"token_ids": len(event.token_ids), "amounts": len(event.amounts)}
            )

        sold_at = envelope.block_timestamp or utcnow()

        result = await db.execute(
            select(Payment).where(
                Payment.project_id == event.project_id,
                Payment.consideration_ref == event.consideration_ref,
                Payment.payment_type == PaymentType.LIFT_UNIT_PURCHASE
            )
        )
        payment = result.scalars().first()

        if payment is None:
            payment = Payment(
                payment_type=PaymentType.LIFT_UNIT_PURCHASE,
                project_id=event.project_id,
                amount=str(event.proceeds),
                payment_token=NATIVE_TOKEN,
                network_id=envelope.network_id,
                payer_address=event.beneficiary,
                recipient_address=event.beneficiary,
                consideration_ref=event.consideration_ref,
                status=PaymentStatus.CONFIRMED,
                confirmed_at=sold_at,
                meta={
                    "token_ids": [str(t) for t in event.token_ids],
                    "amounts": [str(a) for a in event.amounts],
                    "created_from_event": True,
                }
            )
            db.add(payment)
            await db.flush()
            self.logger.info("Created payment from sale", payment_id=payment.id, project_id=event.project_id)
        elif payment.status == PaymentStatus.PENDING:
            payment.status = PaymentStatus.CONFIRMED
            payment.confirmed_at = sold_at

        for token_id, amount in zip(event.token_ids, event.amounts):
            sale = {
                "sold_amount": str(amount),
                "sold_to": event.beneficiary,
                "sold_at": sold_at.isoformat(),
            }
            unit = await db.get(LiftUnit, str(token_id))
            if unit is None:
                db.add(LiftUnit(
                    token_id=str(token_id),
                    project_id=event.project_id,
                    status=LiftUnitStatus.SOLD,
                    quantity=str(amount),
                    meta=sale
                ))
            else:
                unit.status = LiftUnitStatus.SOLD
                unit.meta = {**(unit.meta or {}), **sale}

        existing = await db.execute(
            select(PaymentEvent.id).where(
                PaymentEvent.indexed_event_id == envelope.event_id,
                PaymentEvent.event_type == PaymentEventType.UNITS_SOLD
            )
        )
        if existing.scalar_one_or_none() is None:
            db.add(PaymentEvent(
                payment_id=payment.id,
                indexed_event_id=envelope.event_id,
                event_type=PaymentEventType.UNITS_SOLD,
                amount=str(event.proceeds),
                meta={"token_ids": [str(t) for t in event.token_ids]}
            ))

        self.logger.info(
            "Units sold",
            project_id=event.project_id,
            beneficiary=event.beneficiary,
            units=len(event.token_ids),
            proceeds=str(event.proceeds)
        )

    async def handle_market_window_opened(self, db: AsyncSession, envelope: EventEnvelope):
        event: MarketWindowOpened = envelope.payload
        self.logger.info("Market window opened", project_id=event.project_id, closes_at=event.closes_at)

    async def handle_market_window_extended(self, db: AsyncSession, envelope: EventEnvelope):
        event: MarketWindowExtended = envelope.payload
        self.logger.info(
            "Market window extended",
            project_id=event.project_id,
            new_closes_at=event.new_closes_at
        )
