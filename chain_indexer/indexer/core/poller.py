"""
Poller - the scan loop of one indexed source.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import structlog

from chain_indexer.core.config import settings
from chain_indexer.core.exceptions import IndexerException, TransportError
from chain_indexer.models.base import utcnow
from chain_indexer.models.indexed_event import EventStatus
from chain_indexer.services.chain_reader import ChainReader
from chain_indexer.services.cursor_store import CursorStore
from chain_indexer.services.event_decoder import DecodeFailure, EventDecoder
from chain_indexer.services.event_store import EventStore, InsertOutcome, NewEvent

from ..handlers.base import EventEnvelope
from .dispatcher import EventDispatcher, envelope_from_row
from .events import EventPayload, UnknownEvent
from .types import (
    IndexerStatus, ProcessingStats, RawLog, ScanRange, SourceConfig, SourceKey,
    TickOutcome, TickResult
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")


def compute_scan_range(
    last_processed_height: int,
    start_height: int,
    confirmations: int,
    batch_size: int,
    head_height: int
) -> Optional[ScanRange]:
    """
    Choose the next block range to scan, or None if nothing is confirmed yet.

    Only blocks at least `confirmations` deep are scanned, and at most
    `batch_size` of them per tick.
    """
    confirmed_height = head_height - confirmations
    if last_processed_height >= confirmed_height:
        return None

    from_height = max(last_processed_height + 1, start_height)
    to_height = min(from_height + batch_size - 1, confirmed_height)
    if from_height > to_height:
        return None

    return ScanRange(from_height, to_height, confirmed_height)


class Poller:
    """
    Scans one source on a fixed interval.

    A tick computes the next confirmed range, fetches and decodes its logs,
    stores them with dedup-on-write, dispatches newly stored events to the
    business handler and then advances the cursor. Stored events of the
    range that are still PENDING are dispatched again. Any failure before the
    cursor write is recorded on the cursor and the range is retried on the
    next tick. Ticks never overlap: a tick requested while another is in
    flight is skipped.
    """

    def __init__(
        self,
        config: SourceConfig,
        chain_reader: ChainReader,
        decoder: EventDecoder,
        cursor_store: CursorStore,
        event_store: EventStore,
        dispatcher: EventDispatcher,
        poll_interval: Optional[float] = None,
        rpc_timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.config = config
        self.chain_reader = chain_reader
        self.decoder = decoder
        self.cursor_store = cursor_store
        self.event_store = event_store
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval if poll_interval is not None else settings.indexer_poll_interval
        self.rpc_timeout = rpc_timeout if rpc_timeout is not None else settings.indexer_rpc_timeout
        self.clock = clock

        self.logger = logger.bind(service="poller", source=config.label)
        self.status = IndexerStatus.STOPPED
        self.stats = ProcessingStats()

        self._tick_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def key(self) -> SourceKey:
        return self.config.key

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_busy(self) -> bool:
        return self._tick_lock.locked()

    # Lifecycle

    def start(self) -> None:
        """Start the periodic scan loop."""
        if self.is_running:
            self.logger.warning("Poller already running")
            return

        self._stop_event = asyncio.Event()
        self.stats.start_time = self.clock()
        self.status = IndexerStatus.RUNNING
        self._task = asyncio.create_task(self._run_loop(), name=f"poller:{self.config.label}")
        self.logger.info("Poller started", interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the loop. An in-flight tick is allowed to finish."""
        if self._task is None:
            return

        self.status = IndexerStatus.STOPPING
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            self.status = IndexerStatus.STOPPED
            self.logger.info("Poller stopped")

    async def _run_loop(self):
        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # Scanning

    async def tick(self) -> TickResult:
        """Run one scan tick unless one is already in flight."""
        if self._tick_lock.locked():
            result = TickResult(TickOutcome.SKIPPED_BUSY)
            self.stats.record(result, self.clock())
            self.logger.debug("Tick skipped, previous tick still running")
            return result

        async with self._tick_lock:
            result = await self._run_tick()

        self.stats.record(result, self.clock())
        return result

    async def _run_tick(self) -> TickResult:
        scan_range = None
        try:
            cursor = await self.cursor_store.get(self.key)
            if cursor is None:
                cursor = await self.cursor_store.ensure_cursor(self.config)
            if not cursor.is_active:
                return TickResult(TickOutcome.INACTIVE)

            head_height = await self._rpc(
                "head_height",
                self.chain_reader.head_height(self.config.network_id)
            )
            scan_range = compute_scan_range(
                cursor.last_processed_height,
                self.config.start_height,
                self.config.confirmations,
                self.config.batch_size,
                head_height
            )
            if scan_range is None:
                await self.cursor_store.touch(self.key, self.clock())
                return TickResult(TickOutcome.NO_NEW_RANGE)

            result = await self._ingest(scan_range)
            await self.cursor_store.advance(self.key, scan_range.to_height, self.clock())

            result.outcome = TickOutcome.ADVANCED
            self.logger.info(
                "Scanned range",
                from_height=scan_range.from_height,
                to_height=scan_range.to_height,
                logs=result.logs_fetched,
                stored=result.events_stored,
                duplicates=result.duplicates,
                processed=result.processed,
                failed=result.failed
            )
            return result

        except Exception as e:
            message = e.message if isinstance(e, IndexerException) else f"{type(e).__name__}: {e}"
            self.logger.error(
                "Tick failed",
                error=message,
                from_height=scan_range.from_height if scan_range else None,
                to_height=scan_range.to_height if scan_range else None
            )
            try:
                await self.cursor_store.record_error(self.key, message, self.clock())
            except Exception as record_error:
                self.logger.error("Failed to record tick error", error=str(record_error))
            return TickResult(TickOutcome.FAILED, scan_range=scan_range, error=message)

    async def backfill(self, from_height: int, to_height: int) -> TickResult:
        """
        Ingest an explicit range without moving the cursor.

        The range is clipped to the confirmed head and scanned in
        batch_size chunks. Already stored logs are skipped by dedup.
        Waits for any in-flight tick instead of skipping.
        """
        async with self._tick_lock:
            total = TickResult(TickOutcome.NO_NEW_RANGE)
            try:
                head_height = await self._rpc(
                    "head_height",
                    self.chain_reader.head_height(self.config.network_id)
                )
                confirmed_height = head_height - self.config.confirmations
                last = min(to_height, confirmed_height)
                start = max(from_height, 0)

                while start <= last:
                    end = min(start + self.config.batch_size - 1, last)
                    chunk = await self._ingest(ScanRange(start, end, confirmed_height))
                    total.logs_fetched += chunk.logs_fetched
                    total.events_stored += chunk.events_stored
                    total.duplicates += chunk.duplicates
                    total.unknown += chunk.unknown
                    total.processed += chunk.processed
                    total.failed += chunk.failed
                    total.outcome = TickOutcome.ADVANCED
                    total.scan_range = ScanRange(max(from_height, 0), end, confirmed_height)
                    start = end + 1
            except Exception as e:
                total.outcome = TickOutcome.FAILED
                total.error = e.message if isinstance(e, IndexerException) else str(e)
                self.logger.error("Backfill failed", error=total.error)

        self.logger.info(
            "Backfill finished",
            from_height=from_height,
            to_height=to_height,
            outcome=total.outcome.value,
            stored=total.events_stored,
            duplicates=total.duplicates
        )
        return total

    async def _rpc(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.rpc_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"{operation} timed out after {self.rpc_timeout}s",
                {"source": self.config.label}
            ) from e

    async def _ingest(self, scan_range: ScanRange) -> TickResult:
        """Fetch, decode, store and dispatch the logs of one range."""
        logs = await self._rpc(
            "get_logs",
            self.chain_reader.get_logs(
                self.config.network_id,
                self.config.contract_address,
                scan_range.from_height,
                scan_range.to_height
            )
        )
        result = TickResult(TickOutcome.ADVANCED, scan_range=scan_range, logs_fetched=len(logs))
        if not logs:
            return result

        existing = await self.event_store.existing_keys(
            self.config.network_id,
            [(log.tx_hash, log.log_index) for log in logs]
        )
        # rows stored by an earlier run that never reached the handler
        stranded = await self.event_store.pending_events(self.config.network_id, existing)

        timestamps: Dict[str, datetime] = {}
        new_events: List[NewEvent] = []
        payloads: Dict[Tuple[str, int], EventPayload] = {}
        seen = set(existing)
        for log in logs:
            if (log.tx_hash, log.log_index) in seen:
                continue
            seen.add((log.tx_hash, log.log_index))

            if log.block_hash not in timestamps:
                timestamps[log.block_hash] = await self._rpc(
                    "block_timestamp",
                    self.chain_reader.block_timestamp(self.config.network_id, log.block_hash)
                )
            event, payload = self._to_new_event(log, timestamps[log.block_hash])
            new_events.append(event)
            payloads[event.key] = payload

        outcomes = await self.event_store.insert_batch(new_events)

        result.duplicates = len(logs) - len(new_events)
        for row in stranded:
            self.logger.info("Re-dispatching stored event", event_id=row.id, block_number=row.block_number)
            if await self.dispatcher.dispatch(envelope_from_row(row)):
                result.processed += 1
            else:
                result.failed += 1

        for outcome in outcomes:
            if not outcome.created:
                result.duplicates += 1
                continue
            result.events_stored += 1
            if outcome.event.status == EventStatus.SKIPPED:
                result.unknown += 1
                continue
            envelope = self._envelope(outcome, payloads[outcome.event.key])
            if await self.dispatcher.dispatch(envelope):
                result.processed += 1
            else:
                result.failed += 1

        return result

    def _to_new_event(self, log: RawLog, block_timestamp: datetime) -> Tuple[NewEvent, EventPayload]:
        decoded = self.decoder.decode(self.config.schema_kind, log)
        if isinstance(decoded, DecodeFailure):
            payload: EventPayload = UnknownEvent()
            status = EventStatus.SKIPPED
        else:
            payload = decoded
            status = EventStatus.PENDING

        event = NewEvent(
            network_id=self.config.network_id,
            tx_hash=log.tx_hash,
            log_index=log.log_index,
            contract_address=self.config.contract_address,
            schema_kind=self.config.schema_kind.value,
            event_name=payload.event_name,
            event_signature=log.signature,
            block_number=log.block_number,
            block_hash=log.block_hash,
            block_timestamp=block_timestamp,
            tx_index=log.tx_index,
            topics=list(log.topics),
            data=log.data,
            decoded_args=payload.to_args(),
            status=status,
        )
        return event, payload

    @staticmethod
    def _envelope(outcome: InsertOutcome, payload: EventPayload) -> EventEnvelope:
        event = outcome.event
        return EventEnvelope(
            event_id=outcome.event_id,
            network_id=event.network_id,
            contract_address=event.contract_address,
            schema_kind=event.schema_kind,
            event_name=event.event_name,
            block_number=event.block_number,
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            block_timestamp=event.block_timestamp,
            payload=payload,
        )
