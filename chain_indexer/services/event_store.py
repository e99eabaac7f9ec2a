"""
Event store - the deduplicated, append-only log of indexed events.

Rows are keyed by (network_id, tx_hash, log_index). Inserting a key that
already exists is a no-op. Outcome writes are single-row conditional
updates so the retry sweep and a live poller never clobber each other.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy import and_, case, func, literal, or_, select, true, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chain_indexer.core.config import IndexerConfig
from chain_indexer.core.database import insert_or_ignore
from chain_indexer.core.exceptions import PersistenceError
from chain_indexer.models.indexed_event import IndexedEvent, EventStatus


logger = structlog.get_logger(__name__)

DEDUP_KEY = ("network_id", "tx_hash", "log_index")


@dataclass
class NewEvent:
    """Column values for an event about to be stored."""
    network_id: int
    tx_hash: str
    log_index: int
    contract_address: str
    schema_kind: str
    event_name: str
    event_signature: Optional[str]
    block_number: int
    block_hash: str
    block_timestamp: Optional[datetime]
    tx_index: int
    topics: List[str]
    data: str
    decoded_args: Dict[str, Any]
    status: EventStatus = EventStatus.PENDING

    @property
    def key(self) -> Tuple[str, int]:
        return (self.tx_hash, self.log_index)

    def values(self) -> Dict[str, Any]:
        return {
            "network_id": self.network_id,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "contract_address": self.contract_address,
            "schema_kind": self.schema_kind,
            "event_name": self.event_name,
            "event_signature": self.event_signature,
            "block_number": self.block_number,
            "block_hash": self.block_hash,
            "block_timestamp": self.block_timestamp,
            "tx_index": self.tx_index,
            "topics": list(self.topics),
            "data": self.data,
            "decoded_args": self.decoded_args,
            "status": self.status,
            "processed": False,
            "retry_count": 0,
        }


@dataclass
class InsertOutcome:
    """Result of a dedup insert."""
    event_id: Optional[int]
    created: bool
    event: NewEvent


@dataclass
class EventFilters:
    """Filters for read-only event inspection."""
    network_id: Optional[int] = None
    contract_address: Optional[str] = None
    event_name: Optional[str] = None
    processed: Optional[bool] = None
    has_error: Optional[bool] = None
    status: Optional[EventStatus] = None
    limit: int = IndexerConfig.DEFAULT_EVENTS_PAGE
    offset: int = 0

    def __post_init__(self):
        self.limit = max(1, min(self.limit, IndexerConfig.MAX_EVENTS_PAGE))
        self.offset = max(0, self.offset)
        if self.contract_address:
            self.contract_address = self.contract_address.lower()


@dataclass
class EventPage:
    events: List[IndexedEvent] = field(default_factory=list)
    total: int = 0
    limit: int = IndexerConfig.DEFAULT_EVENTS_PAGE
    offset: int = 0


class EventStore:
    """Persistence for IndexedEvent rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self.logger = logger.bind(service="event_store")

    async def existing_keys(
        self,
        network_id: int,
        keys: Iterable[Tuple[str, int]]
    ) -> Set[Tuple[str, int]]:
        """Return which (tx_hash, log_index) keys are already stored for a network."""
        keys = set(keys)
        if not keys:
            return set()

        async with self.session_factory() as db:
            result = await db.execute(
                select(IndexedEvent.tx_hash, IndexedEvent.log_index).where(
                    IndexedEvent.network_id == network_id,
                    IndexedEvent.tx_hash.in_(sorted({tx_hash for tx_hash, _ in keys}))
                )
            )
            return {(row.tx_hash, row.log_index) for row in result} & keys

    async def insert_batch(self, events: List[NewEvent]) -> List[InsertOutcome]:
        """
        Insert events in one transaction, ignoring keys that already exist.

        Raises:
            PersistenceError: If the batch could not be written; nothing is kept
        """
        outcomes = []
        try:
            async with self.session_factory() as db:
                for event in events:
                    event_id = await insert_or_ignore(db, IndexedEvent, event.values(), DEDUP_KEY)
                    outcomes.append(InsertOutcome(event_id, event_id is not None, event))
                await db.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to persist events: {e}",
                {"count": len(events)}
            ) from e
        return outcomes

    async def insert_if_absent(self, event: NewEvent) -> InsertOutcome:
        (outcome,) = await self.insert_batch([event])
        return outcome

    async def mark_processed(self, event_id: int, at: datetime) -> bool:
        """Record a successful handler run. No-op if the row is already processed."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(IndexedEvent)
                .where(
                    IndexedEvent.id == event_id,
                    IndexedEvent.processed == False  # noqa: E712
                )
                .values(
                    processed=True,
                    processed_at=at,
                    processing_error=None,
                    status=EventStatus.PROCESSED,
                )
            )
            await db.commit()
            return result.rowcount == 1

    async def mark_failed(self, event_id: int, message: str, max_retries: int) -> bool:
        """
        Record a failed handler run.

        Increments retry_count and stores the error. The row moves to
        NEEDS_INTERVENTION when the count reaches max_retries. Rows already
        processed or already at the cap are left untouched.
        """
        status_type = IndexedEvent.__table__.c.status.type
        async with self.session_factory() as db:
            result = await db.execute(
                update(IndexedEvent)
                .where(
                    IndexedEvent.id == event_id,
                    IndexedEvent.processed == False,  # noqa: E712
                    IndexedEvent.retry_count < max_retries
                )
                .values(
                    processing_error=message,
                    retry_count=IndexedEvent.retry_count + 1,
                    status=case(
                        (
                            IndexedEvent.retry_count + 1 >= max_retries,
                            literal(EventStatus.NEEDS_INTERVENTION, status_type)
                        ),
                        else_=literal(EventStatus.FAILED, status_type)
                    ),
                )
            )
            await db.commit()
            return result.rowcount == 1

    async def pending_events(
        self,
        network_id: int,
        keys: Iterable[Tuple[str, int]]
    ) -> List[IndexedEvent]:
        """Stored rows among `keys` that never got a handler outcome, in chain order."""
        keys = set(keys)
        if not keys:
            return []

        async with self.session_factory() as db:
            result = await db.execute(
                select(IndexedEvent)
                .where(
                    IndexedEvent.network_id == network_id,
                    IndexedEvent.tx_hash.in_(sorted({tx_hash for tx_hash, _ in keys})),
                    IndexedEvent.status == EventStatus.PENDING
                )
                .order_by(IndexedEvent.block_number.asc(), IndexedEvent.log_index.asc())
            )
            return [row for row in result.scalars().all() if (row.tx_hash, row.log_index) in keys]

    async def select_retryable(
        self,
        limit: int,
        max_retries: int,
        pending_before: Optional[datetime] = None
    ) -> List[IndexedEvent]:
        """
        Unprocessed rows with retries left, oldest first.

        A row qualifies when it carries an error, or, if `pending_before` is
        given, when it is still PENDING and was stored at or before that time.
        """
        eligible = IndexedEvent.processing_error.is_not(None)
        if pending_before is not None:
            eligible = or_(eligible, self._stale_pending(pending_before))

        async with self.session_factory() as db:
            result = await db.execute(
                select(IndexedEvent)
                .where(
                    IndexedEvent.processed == False,  # noqa: E712
                    eligible,
                    IndexedEvent.retry_count < max_retries
                )
                .order_by(IndexedEvent.created_at.asc(), IndexedEvent.id.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get(self, event_id: int) -> Optional[IndexedEvent]:
        async with self.session_factory() as db:
            return await db.get(IndexedEvent, event_id)

    async def list_events(self, filters: EventFilters) -> EventPage:
        conditions = []
        if filters.network_id is not None:
            conditions.append(IndexedEvent.network_id == filters.network_id)
        if filters.contract_address:
            conditions.append(IndexedEvent.contract_address == filters.contract_address)
        if filters.event_name:
            conditions.append(IndexedEvent.event_name == filters.event_name)
        if filters.processed is not None:
            conditions.append(IndexedEvent.processed == filters.processed)
        if filters.has_error is True:
            conditions.append(IndexedEvent.processing_error.is_not(None))
        elif filters.has_error is False:
            conditions.append(IndexedEvent.processing_error.is_(None))
        if filters.status is not None:
            conditions.append(IndexedEvent.status == filters.status)
        where = and_(*conditions) if conditions else true()

        async with self.session_factory() as db:
            total = await db.scalar(select(func.count(IndexedEvent.id)).where(where))
            result = await db.execute(
                select(IndexedEvent)
                .where(where)
                .order_by(IndexedEvent.block_number.desc(), IndexedEvent.log_index.desc())
                .limit(filters.limit)
                .offset(filters.offset)
            )
            events = list(result.scalars().all())

        return EventPage(events=events, total=total or 0, limit=filters.limit, offset=filters.offset)

    async def count_needing_intervention(self) -> int:
        async with self.session_factory() as db:
            total = await db.scalar(
                select(func.count(IndexedEvent.id)).where(
                    IndexedEvent.status == EventStatus.NEEDS_INTERVENTION
                )
            )
            return total or 0

    async def count_stale_pending(self, before: datetime) -> int:
        """PENDING rows stored at or before `before` that no handler run has touched."""
        async with self.session_factory() as db:
            total = await db.scalar(
                select(func.count(IndexedEvent.id)).where(self._stale_pending(before))
            )
            return total or 0

    @staticmethod
    def _stale_pending(before: datetime):
        return and_(
            IndexedEvent.status == EventStatus.PENDING,
            IndexedEvent.created_at <= before
        )
