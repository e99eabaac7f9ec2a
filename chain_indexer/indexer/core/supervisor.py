"""
IndexerSupervisor - owns the pollers and the operator-facing operations.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

import structlog
from pydantic import ValidationError

from chain_indexer.core.config import settings, IndexerConfig
from chain_indexer.core.exceptions import ConfigurationError, SourceNotFoundError
from chain_indexer.models.base import as_utc, utcnow
from chain_indexer.models.indexed_event import IndexedEvent
from chain_indexer.models.indexer_state import IndexerState
from chain_indexer.services.chain_reader import ChainReader
from chain_indexer.services.cursor_store import CursorStore
from chain_indexer.services.event_decoder import EventDecoder
from chain_indexer.services.event_store import EventFilters, EventPage, EventStore

from ..handlers.base import BusinessHandler
from .dispatcher import EventDispatcher, envelope_from_row
from .poller import Poller
from .types import IndexerStatus, SourceConfig, SourceKey, TickResult


logger = structlog.get_logger(__name__)


class StartResult(Enum):
    ACCEPTED = "accepted"
    ALREADY_RUNNING = "already_running"


class PollerRegistry:
    """The set of pollers owned by one supervisor, keyed by source."""

    def __init__(self):
        self._pollers: Dict[SourceKey, Poller] = {}

    def add(self, poller: Poller) -> None:
        if poller.key in self._pollers:
            raise ConfigurationError(
                f"Poller already registered for {poller.config.label}",
                {"source": poller.config.label}
            )
        self._pollers[poller.key] = poller

    def get(self, key: SourceKey) -> Optional[Poller]:
        return self._pollers.get(key)

    def clear(self) -> None:
        self._pollers.clear()

    def __iter__(self) -> Iterator[Poller]:
        return iter(list(self._pollers.values()))

    def __len__(self) -> int:
        return len(self._pollers)


@dataclass
class StatusReport:
    is_running: bool
    active_poller_count: int
    cursors: List[IndexerState] = field(default_factory=list)


@dataclass
class SourceHealth:
    source: str
    healthy: bool
    issues: List[str] = field(default_factory=list)
    error_count: int = 0
    last_error: Optional[str] = None
    last_sync_at: Optional[datetime] = None


@dataclass
class HealthReport:
    healthy: bool
    is_running: bool
    checked_at: datetime
    sources: List[SourceHealth] = field(default_factory=list)
    events_needing_intervention: int = 0
    events_stuck_pending: int = 0

    @property
    def unhealthy_sources(self) -> List[SourceHealth]:
        return [s for s in self.sources if not s.healthy]


@dataclass
class RetryResult:
    processed: int = 0
    failed: int = 0


def _validate_configs(
    configs: Iterable[Union[SourceConfig, Dict[str, Any]]],
    chain_reader: Optional[ChainReader] = None
) -> List[SourceConfig]:
    validated: List[SourceConfig] = []
    seen = set()
    for raw in configs:
        try:
            config = raw if isinstance(raw, SourceConfig) else SourceConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid source configuration",
                {"config": raw, "errors": e.errors(include_url=False)}
            ) from e
        if config.key in seen:
            raise ConfigurationError(
                f"Duplicate source configuration: {config.label}",
                {"source": config.label}
            )
        if chain_reader is not None and not chain_reader.supports(config.network_id):
            raise ConfigurationError(
                f"No RPC endpoint configured for network {config.network_id}",
                {"source": config.label, "network_id": config.network_id}
            )
        seen.add(config.key)
        validated.append(config)
    return validated


class IndexerSupervisor:
    """
    Runs one Poller per configured source.

    Features:
    - Idempotent start/stop
    - Status and health reporting from the persisted cursors
    - Retry sweep for events whose business handling failed
    - Read-only event inspection and operator backfills
    """

    def __init__(
        self,
        chain_reader: ChainReader,
        handler: BusinessHandler,
        cursor_store: CursorStore,
        event_store: EventStore,
        decoder: Optional[EventDecoder] = None,
        registry: Optional[PollerRegistry] = None,
        poll_interval: Optional[float] = None,
        max_retries: Optional[int] = None,
        rpc_timeout: Optional[float] = None,
        handler_timeout: Optional[float] = None,
        stale_threshold: Optional[float] = None,
        pending_grace: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.chain_reader = chain_reader
        self.handler = handler
        self.cursor_store = cursor_store
        self.event_store = event_store
        self.decoder = decoder or EventDecoder()
        self.registry = registry if registry is not None else PollerRegistry()

        self.poll_interval = poll_interval if poll_interval is not None else settings.indexer_poll_interval
        self.max_retries = max_retries if max_retries is not None else settings.indexer_max_retries
        self.rpc_timeout = rpc_timeout if rpc_timeout is not None else settings.indexer_rpc_timeout
        self.stale_threshold = timedelta(
            seconds=stale_threshold if stale_threshold is not None else settings.indexer_stale_threshold
        )
        self.pending_grace = timedelta(
            seconds=pending_grace if pending_grace is not None else settings.indexer_pending_grace
        )
        self.clock = clock

        self.dispatcher = EventDispatcher(
            handler,
            event_store,
            max_retries=self.max_retries,
            handler_timeout=handler_timeout,
            clock=clock
        )

        self.logger = logger.bind(service="indexer_supervisor")
        self.state = IndexerStatus.STOPPED

    @property
    def is_running(self) -> bool:
        return self.state == IndexerStatus.RUNNING

    def _make_poller(self, config: SourceConfig) -> Poller:
        return Poller(
            config,
            self.chain_reader,
            self.decoder,
            self.cursor_store,
            self.event_store,
            self.dispatcher,
            poll_interval=self.poll_interval,
            rpc_timeout=self.rpc_timeout,
            clock=self.clock
        )

    async def start(self, configs: Sequence[Union[SourceConfig, Dict[str, Any]]]) -> StartResult:
        """
        Start polling the given sources.

        Raises:
            ConfigurationError: If a config is invalid, a source is listed twice
                or the chain reader has no endpoint for its network
        """
        if self.state in (IndexerStatus.RUNNING, IndexerStatus.STARTING):
            self.logger.warning("Indexer already running", active_pollers=len(self.registry))
            return StartResult.ALREADY_RUNNING

        validated = _validate_configs(configs, self.chain_reader)

        self.state = IndexerStatus.STARTING
        self.logger.info("Starting indexer", sources=len(validated))
        try:
            for config in validated:
                await self.cursor_store.ensure_cursor(config)
                self.registry.add(self._make_poller(config))
        except Exception:
            self.registry.clear()
            self.state = IndexerStatus.STOPPED
            raise

        for poller in self.registry:
            poller.start()

        self.state = IndexerStatus.RUNNING
        self.logger.info("Indexer started", active_pollers=len(self.registry))
        return StartResult.ACCEPTED

    async def stop(self) -> None:
        """Stop every poller; in-flight ticks are allowed to finish."""
        if self.state == IndexerStatus.STOPPED:
            return

        self.state = IndexerStatus.STOPPING
        self.logger.info("Stopping indexer", active_pollers=len(self.registry))
        for poller in self.registry:
            await poller.stop()
        self.registry.clear()

        self.state = IndexerStatus.STOPPED
        self.logger.info("Indexer stopped")

    async def status(self) -> StatusReport:
        cursors = await self.cursor_store.list_all()
        return StatusReport(
            is_running=self.is_running,
            active_poller_count=sum(1 for p in self.registry if p.is_running),
            cursors=cursors
        )

    async def health(self, now: Optional[datetime] = None) -> HealthReport:
        """
        Derive health from the persisted cursors.

        A source is unhealthy when its last tick failed, when it has never
        synced, or when its last successful sync is older than the stale
        threshold. While running, only the polled sources are reported.
        The report is also unhealthy when the supervisor is not running,
        when events wait for manual intervention, and when events have sat
        in PENDING longer than the pending grace period.
        """
        now = now or self.clock()
        polled = {poller.config.label for poller in self.registry} if self.is_running else None
        sources: List[SourceHealth] = []
        for cursor in await self.cursor_store.list_all():
            if not cursor.is_active:
                continue
            if polled is not None and cursor.source_key not in polled:
                continue
            last_sync_at = as_utc(cursor.last_sync_at)
            issues = []
            if cursor.error_count > 0:
                issues.append(f"{cursor.error_count} consecutive errors")
            if last_sync_at is None:
                issues.append("never synced")
            elif now - last_sync_at > self.stale_threshold:
                issues.append(f"last sync {int((now - last_sync_at).total_seconds())}s ago")
            sources.append(SourceHealth(
                source=cursor.source_key,
                healthy=not issues,
                issues=issues,
                error_count=cursor.error_count,
                last_error=cursor.last_error,
                last_sync_at=last_sync_at
            ))

        stuck = await self.event_store.count_needing_intervention()
        stranded = await self.event_store.count_stale_pending(now - self.pending_grace)
        return HealthReport(
            healthy=(
                self.is_running
                and all(s.healthy for s in sources)
                and stuck == 0
                and stranded == 0
            ),
            is_running=self.is_running,
            checked_at=now,
            sources=sources,
            events_needing_intervention=stuck,
            events_stuck_pending=stranded
        )

    async def retry_failed_events(self, limit: int = 100) -> RetryResult:
        """
        Re-apply failed events from their stored args, oldest first.

        Unprocessed rows with retries left are selected when they carry an
        error or have stayed PENDING past the pending grace period.
        """
        if limit <= 0:
            return RetryResult()
        limit = min(limit, IndexerConfig.MAX_RETRY_BATCH)
        rows = await self.event_store.select_retryable(
            limit,
            self.max_retries,
            pending_before=self.clock() - self.pending_grace
        )

        result = RetryResult()
        for row in rows:
            if await self.dispatcher.dispatch(envelope_from_row(row)):
                result.processed += 1
            else:
                result.failed += 1

        self.logger.info(
            "Retry sweep finished",
            selected=len(rows),
            processed=result.processed,
            failed=result.failed
        )
        return result

    async def list_events(self, filters: Optional[EventFilters] = None) -> EventPage:
        return await self.event_store.list_events(filters or EventFilters())

    async def get_event(self, event_id: int) -> Optional[IndexedEvent]:
        return await self.event_store.get(event_id)

    async def backfill(
        self,
        config: Union[SourceConfig, Dict[str, Any]],
        from_height: int,
        to_height: int
    ) -> TickResult:
        """
        Ingest an explicit block range for a running source.

        The cursor is not moved.

        Raises:
            ConfigurationError: If the range is inverted or the config invalid
            SourceNotFoundError: If the source is not being polled
        """
        (config,) = _validate_configs([config], self.chain_reader)
        if from_height < 0 or from_height > to_height:
            raise ConfigurationError(
                f"Invalid backfill range [{from_height}, {to_height}]",
                {"from_height": from_height, "to_height": to_height}
            )

        poller = self.registry.get(config.key)
        if poller is None:
            raise SourceNotFoundError(config.label)

        self.logger.info(
            "Backfill requested",
            source=config.label,
            from_height=from_height,
            to_height=to_height
        )
        return await poller.backfill(from_height, to_height)
