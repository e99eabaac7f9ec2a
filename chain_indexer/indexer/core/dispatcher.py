"""
Event dispatch - hands stored events to the business handler and records
the outcome on the event row.
"""

import asyncio
from datetime import datetime
from typing import Callable, Optional

import structlog

from chain_indexer.core.config import settings
from chain_indexer.core.exceptions import IndexerException
from chain_indexer.models.base import as_utc, utcnow
from chain_indexer.models.indexed_event import IndexedEvent
from chain_indexer.services.event_store import EventStore

from ..handlers.base import BusinessHandler, EventEnvelope, HandlerResult
from .events import payload_from_record


logger = structlog.get_logger(__name__)


def envelope_from_row(row: IndexedEvent) -> EventEnvelope:
    """Rebuild the handler envelope of a stored event from its decoded args."""
    return EventEnvelope(
        event_id=row.id,
        network_id=row.network_id,
        contract_address=row.contract_address,
        schema_kind=row.schema_kind,
        event_name=row.event_name,
        block_number=row.block_number,
        tx_hash=row.tx_hash,
        log_index=row.log_index,
        block_timestamp=as_utc(row.block_timestamp),
        payload=payload_from_record(row.schema_kind, row.event_name, row.decoded_args),
    )


class EventDispatcher:
    """
    Invokes the business handler for one event at a time.

    Handler exceptions and timeouts count as failures. Failures never
    propagate: they are written to the event row (processing_error,
    retry_count) and reported through the return value.
    """

    def __init__(
        self,
        handler: BusinessHandler,
        event_store: EventStore,
        max_retries: Optional[int] = None,
        handler_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.handler = handler
        self.event_store = event_store
        self.max_retries = max_retries if max_retries is not None else settings.indexer_max_retries
        self.handler_timeout = (
            handler_timeout if handler_timeout is not None else settings.indexer_handler_timeout
        )
        self.clock = clock
        self.logger = logger.bind(service="event_dispatcher")

    async def _apply(self, envelope: EventEnvelope) -> HandlerResult:
        try:
            return await asyncio.wait_for(self.handler.apply(envelope), timeout=self.handler_timeout)
        except asyncio.TimeoutError:
            return HandlerResult.failed(f"Handler timed out after {self.handler_timeout}s")
        except IndexerException as e:
            return HandlerResult.failed(e.message)
        except Exception as e:
            return HandlerResult.failed(f"{type(e).__name__}: {e}")

    async def dispatch(self, envelope: EventEnvelope) -> bool:
        """Apply one event and record the outcome. Returns True on success."""
        result = await self._apply(envelope)

        try:
            if result.success:
                await self.event_store.mark_processed(envelope.event_id, self.clock())
            else:
                await self.event_store.mark_failed(
                    envelope.event_id,
                    result.error or "Handler failed",
                    self.max_retries
                )
        except Exception as e:
            self.logger.error(
                "Failed to record dispatch outcome",
                event_id=envelope.event_id,
                success=result.success,
                error=str(e)
            )
            return False

        if result.success:
            self.logger.debug(
                "Event processed",
                event_id=envelope.event_id,
                event_name=envelope.event_name
            )
        else:
            self.logger.warning(
                "Event processing failed",
                event_id=envelope.event_id,
                event_name=envelope.event_name,
                error=result.error
            )
        return result.success
