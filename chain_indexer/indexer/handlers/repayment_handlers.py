"""
Event handlers for the repayment escrow contract.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chain_indexer.core.exceptions import PaymentNotFoundError
from chain_indexer.indexer.core.events import (
    ProceedsReceived, PaidFunder, PaidPlatform, PaidSteward
)
from chain_indexer.models.payment import (
    Payment, PaymentEvent, PaymentStatus, PaymentEventType
)

from .base import EventEnvelope


logger = structlog.get_logger(__name__)


class RepaymentHandlers:
    """
    Handles RepaymentEscrow events.
    """

    def __init__(self):
        self.logger = logger.bind(service="repayment_handlers")

    async def handle_proceeds_received(self, db: AsyncSession, envelope: EventEnvelope):
        """Move the matching payment into escrow and record the notification once."""
        event: ProceedsReceived = envelope.payload

        result = await db.execute(
            select(Payment).where(
                Payment.project_id == event.project_id,
                Payment.consideration_ref == event.consideration_ref
            )
        )
        payment = result.scalars().first()
        if payment is None:
            raise PaymentNotFoundError(event.project_id, event.consideration_ref)

        if payment.status in (PaymentStatus.PENDING, PaymentStatus.CONFIRMED):
            payment.status = PaymentStatus.IN_ESCROW
        payment.proceeds_notified = True

        existing = await db.execute(
            select(PaymentEvent.id).where(
                PaymentEvent.indexed_event_id == envelope.event_id,
                PaymentEvent.event_type == PaymentEventType.PROCEEDS_NOTIFIED
            )
        )
        if existing.scalar_one_or_none() is None:
            db.add(PaymentEvent(
                payment_id=payment.id,
                indexed_event_id=envelope.event_id,
                event_type=PaymentEventType.PROCEEDS_NOTIFIED,
                amount=str(event.amount),
                meta={
                    "consideration_ref": event.consideration_ref,
                    "tx_hash": envelope.tx_hash,
                }
            ))

        self.logger.info(
            "Proceeds received",
            payment_id=payment.id,
            project_id=event.project_id,
            amount=str(event.amount)
        )

    async def handle_paid_funder(self, db: AsyncSession, envelope: EventEnvelope):
        event: PaidFunder = envelope.payload
        self.logger.info("Funder payment processed", project_id=event.project_id, amount=str(event.amount))

    async def handle_paid_platform(self, db: AsyncSession, envelope: EventEnvelope):
        event: PaidPlatform = envelope.payload
        self.logger.info("Platform payment processed", project_id=event.project_id, amount=str(event.amount))

    async def handle_paid_steward(self, db: AsyncSession, envelope: EventEnvelope):
        event: PaidSteward = envelope.payload
        self.logger.info("Steward payment processed", project_id=event.project_id, amount=str(event.amount))
