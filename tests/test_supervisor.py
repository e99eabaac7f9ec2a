"""
Test the indexer supervisor: lifecycle, health, retry sweep and backfill.
"""

import asyncio
from datetime import timedelta

import pytest

from chain_indexer.core.exceptions import (
    ConfigurationError, PersistenceError, SourceNotFoundError, TransportError
)
from chain_indexer.indexer.core.supervisor import IndexerSupervisor, RetryResult, StartResult
from chain_indexer.indexer.core.types import SchemaKind, SourceConfig, TickOutcome
from chain_indexer.models.indexed_event import EventStatus
from chain_indexer.services.chain_reader import Web3ChainReader
from chain_indexer.services.event_store import EventFilters

from conftest import (
    ALLOCATION_ADDRESS, BASE_TIME, NETWORK_ID, REPAYMENT_ADDRESS, FakeHandler, paid_funder_log
)


@pytest.fixture
async def make_supervisor(chain, cursor_store, event_store):
    created = []

    def _make(handler, **kwargs) -> IndexerSupervisor:
        kwargs.setdefault("poll_interval", 3600)
        kwargs.setdefault("max_retries", 3)
        kwargs.setdefault("rpc_timeout", 5.0)
        kwargs.setdefault("handler_timeout", 5.0)
        kwargs.setdefault("stale_threshold", 300)
        supervisor = IndexerSupervisor(chain, handler, cursor_store, event_store, **kwargs)
        created.append(supervisor)
        return supervisor

    yield _make

    for supervisor in created:
        await supervisor.stop()


async def first_ticks(supervisor: IndexerSupervisor) -> None:
    """Wait until every poller has finished its initial tick."""
    for _ in range(500):
        if all(p.stats.ticks >= 1 for p in supervisor.registry):
            return
        await asyncio.sleep(0.01)
    raise AssertionError("pollers did not tick")


def allocation_source() -> SourceConfig:
    return SourceConfig(
        network_id=NETWORK_ID,
        contract_address=ALLOCATION_ADDRESS,
        schema_kind=SchemaKind.ALLOCATION_ESCROW,
    )


# Lifecycle

@pytest.mark.asyncio
async def test_start_is_idempotent(chain, make_supervisor, repayment_source):
    supervisor = make_supervisor(FakeHandler())

    assert await supervisor.start([repayment_source]) == StartResult.ACCEPTED
    assert await supervisor.start([repayment_source]) == StartResult.ALREADY_RUNNING

    assert len(supervisor.registry) == 1
    await first_ticks(supervisor)
    report = await supervisor.status()
    assert report.is_running
    assert report.active_poller_count == 1
    assert len(report.cursors) == 1


@pytest.mark.asyncio
async def test_start_accepts_raw_config_dicts(make_supervisor):
    supervisor = make_supervisor(FakeHandler())

    result = await supervisor.start([
        {"network_id": NETWORK_ID, "contract_address": REPAYMENT_ADDRESS, "schema_kind": "RepaymentEscrow"},
        {"network_id": NETWORK_ID, "contract_address": ALLOCATION_ADDRESS, "schema_kind": "AllocationEscrow"},
    ])

    assert result == StartResult.ACCEPTED
    assert len(supervisor.registry) == 2


@pytest.mark.asyncio
async def test_duplicate_source_rejected(make_supervisor, cursor_store, repayment_source):
    supervisor = make_supervisor(FakeHandler())
    duplicate = SourceConfig(
        network_id=NETWORK_ID,
        contract_address=REPAYMENT_ADDRESS.upper().replace("0X", "0x"),
        schema_kind=SchemaKind.REPAYMENT_ESCROW,
        batch_size=10,
    )

    with pytest.raises(ConfigurationError):
        await supervisor.start([repayment_source, duplicate])

    assert not supervisor.is_running
    assert len(supervisor.registry) == 0
    assert await cursor_store.list_all() == []


@pytest.mark.asyncio
async def test_invalid_source_rejected(make_supervisor):
    supervisor = make_supervisor(FakeHandler())

    with pytest.raises(ConfigurationError):
        await supervisor.start([
            {"network_id": NETWORK_ID, "contract_address": "0x1234", "schema_kind": "RepaymentEscrow"}
        ])

    assert not supervisor.is_running


@pytest.mark.asyncio
async def test_source_without_rpc_endpoint_rejected(chain, make_supervisor, cursor_store, repayment_source):
    chain.networks = {1}
    supervisor = make_supervisor(FakeHandler())

    with pytest.raises(ConfigurationError, match="No RPC endpoint"):
        await supervisor.start([repayment_source])

    assert not supervisor.is_running
    assert len(supervisor.registry) == 0
    assert await cursor_store.list_all() == []


def test_web3_reader_supports_configured_networks():
    reader = Web3ChainReader(endpoints={1: "http://localhost:8545"}, timeout=1.0)

    assert reader.supports(1)
    assert not reader.supports(NETWORK_ID)


@pytest.mark.asyncio
async def test_stop_is_idempotent(make_supervisor, repayment_source):
    supervisor = make_supervisor(FakeHandler())
    await supervisor.stop()

    await supervisor.start([repayment_source])
    await first_ticks(supervisor)
    await supervisor.stop()
    await supervisor.stop()

    report = await supervisor.status()
    assert not report.is_running
    assert report.active_poller_count == 0


@pytest.mark.asyncio
async def test_restart_resumes_from_cursor(chain, make_supervisor, cursor_store, repayment_source):
    chain.head = 200
    supervisor = make_supervisor(FakeHandler())
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)
    await supervisor.stop()

    chain.head = 300
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)

    assert chain.get_logs_calls[-1][2:] == (189, 288)
    assert (await cursor_store.get(repayment_source.key)).last_processed_height == 288


# Retry sweep

@pytest.mark.asyncio
async def test_failed_event_recovers_through_retry_sweep(chain, make_supervisor, event_store, repayment_source):
    chain.head = 200
    chain.add(REPAYMENT_ADDRESS, paid_funder_log(1, 10, 150, tx=1))
    handler = FakeHandler(["payment missing", "payment missing"])
    supervisor = make_supervisor(handler)

    await supervisor.start([repayment_source])
    await first_ticks(supervisor)
    (event,) = (await supervisor.list_events()).events
    assert event.retry_count == 1
    assert event.processing_error == "payment missing"

    first = await supervisor.retry_failed_events()
    assert (first.processed, first.failed) == (0, 1)
    assert (await supervisor.get_event(event.id)).retry_count == 2

    second = await supervisor.retry_failed_events()
    assert (second.processed, second.failed) == (1, 0)

    event = await supervisor.get_event(event.id)
    assert event.processed is True
    assert event.processing_error is None
    assert event.retry_count == 2
    assert event.status == EventStatus.PROCESSED
    assert len(handler.calls) == 3

    assert await supervisor.retry_failed_events() == RetryResult()


@pytest.mark.asyncio
async def test_retry_sweep_is_bounded_and_oldest_first(chain, make_supervisor, event_store, repayment_source):
    chain.head = 200
    chain.add(
        REPAYMENT_ADDRESS,
        paid_funder_log(1, 10, 150, tx=1),
        paid_funder_log(1, 20, 151, tx=2),
        paid_funder_log(1, 30, 152, tx=3),
    )
    handler = FakeHandler(["down", "down", "down"])
    supervisor = make_supervisor(handler)
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)

    result = await supervisor.retry_failed_events(limit=2)

    assert result.processed == 2
    retried = [call.block_number for call in handler.calls[3:]]
    assert retried == [150, 151]
    remaining = await event_store.select_retryable(10, max_retries=3)
    assert [row.block_number for row in remaining] == [152]


@pytest.mark.asyncio
async def test_retry_limit_of_zero_retries_nothing(chain, make_supervisor, repayment_source):
    chain.head = 200
    chain.add(
        REPAYMENT_ADDRESS,
        paid_funder_log(1, 10, 150, tx=1),
        paid_funder_log(1, 20, 151, tx=2),
    )
    handler = FakeHandler(["down", "down"])
    supervisor = make_supervisor(handler)
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)

    assert await supervisor.retry_failed_events(limit=0) == RetryResult()
    assert await supervisor.retry_failed_events(limit=-5) == RetryResult()
    assert len(handler.calls) == 2

    result = await supervisor.retry_failed_events(limit=1)
    assert result.processed == 1


@pytest.mark.asyncio
async def test_event_with_lost_outcome_is_swept(chain, make_supervisor, event_store, repayment_source, monkeypatch):
    chain.head = 200
    chain.add(REPAYMENT_ADDRESS, paid_funder_log(1, 10, 150, tx=1))
    handler = FakeHandler(["payment missing"])
    supervisor = make_supervisor(handler, pending_grace=0)

    async def lost_write(event_id, message, max_retries):
        raise PersistenceError("connection reset")

    monkeypatch.setattr(event_store, "mark_failed", lost_write)
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)
    monkeypatch.undo()

    (event,) = (await supervisor.list_events()).events
    assert event.status == EventStatus.PENDING
    assert event.processing_error is None

    report = await supervisor.health()
    assert report.events_stuck_pending == 1
    assert not report.healthy

    result = await supervisor.retry_failed_events()

    assert (result.processed, result.failed) == (1, 0)
    assert len(handler.calls) == 2
    assert (await supervisor.get_event(event.id)).status == EventStatus.PROCESSED
    assert (await supervisor.health()).events_stuck_pending == 0


@pytest.mark.asyncio
async def test_fresh_pending_event_waits_for_grace_period(chain, make_supervisor, event_store, repayment_source, monkeypatch):
    chain.head = 200
    chain.add(REPAYMENT_ADDRESS, paid_funder_log(1, 10, 150, tx=1))
    handler = FakeHandler(["payment missing"])
    supervisor = make_supervisor(handler, pending_grace=300)

    async def lost_write(event_id, message, max_retries):
        raise PersistenceError("connection reset")

    monkeypatch.setattr(event_store, "mark_failed", lost_write)
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)
    monkeypatch.undo()

    assert await supervisor.retry_failed_events() == RetryResult()
    assert (await supervisor.health()).events_stuck_pending == 0
    assert len(handler.calls) == 1


# Health

@pytest.mark.asyncio
async def test_idle_chain_is_healthy(make_supervisor, repayment_source):
    supervisor = make_supervisor(FakeHandler(), clock=lambda: BASE_TIME)

    await supervisor.start([repayment_source])
    await first_ticks(supervisor)

    report = await supervisor.health(BASE_TIME + timedelta(seconds=60))
    assert report.healthy
    assert report.is_running
    assert report.unhealthy_sources == []
    assert report.sources[0].last_sync_at == BASE_TIME


@pytest.mark.asyncio
async def test_stale_source_is_unhealthy(make_supervisor, repayment_source):
    supervisor = make_supervisor(FakeHandler(), clock=lambda: BASE_TIME)
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)

    report = await supervisor.health(BASE_TIME + timedelta(minutes=10))

    assert not report.healthy
    (source,) = report.unhealthy_sources
    assert source.issues == ["last sync 600s ago"]


@pytest.mark.asyncio
async def test_source_with_errors_is_unhealthy(chain, make_supervisor, repayment_source):
    chain.head_error = TransportError("rpc down")
    supervisor = make_supervisor(FakeHandler())
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)

    report = await supervisor.health()

    assert not report.healthy
    (source,) = report.unhealthy_sources
    assert source.error_count == 1
    assert source.last_error == "rpc down"
    assert "never synced" in source.issues


@pytest.mark.asyncio
async def test_health_covers_only_polled_sources(make_supervisor, cursor_store, repayment_source):
    # cursor left over from a source that is no longer configured
    await cursor_store.ensure_cursor(allocation_source())
    supervisor = make_supervisor(FakeHandler())
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)

    report = await supervisor.health()

    assert [s.source for s in report.sources] == [repayment_source.label]
    assert report.healthy


@pytest.mark.asyncio
async def test_never_synced_source_is_unhealthy(make_supervisor, cursor_store, repayment_source):
    supervisor = make_supervisor(FakeHandler())
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)
    await supervisor.stop()
    await cursor_store.ensure_cursor(allocation_source())

    report = await supervisor.health()

    assert [s.source for s in report.unhealthy_sources] == [allocation_source().label]
    assert report.unhealthy_sources[0].issues == ["never synced"]


@pytest.mark.asyncio
async def test_stopped_supervisor_is_unhealthy(make_supervisor, repayment_source):
    supervisor = make_supervisor(FakeHandler())
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)
    await supervisor.stop()

    report = await supervisor.health()

    assert not report.is_running
    assert not report.healthy
    assert report.unhealthy_sources == []


@pytest.mark.asyncio
async def test_events_needing_intervention_make_unhealthy(chain, make_supervisor, repayment_source):
    chain.head = 200
    chain.add(REPAYMENT_ADDRESS, paid_funder_log(1, 10, 150, tx=1))
    supervisor = make_supervisor(FakeHandler(["bad data"]), max_retries=1)
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)

    report = await supervisor.health()

    assert report.events_needing_intervention == 1
    assert not report.healthy
    assert (await supervisor.retry_failed_events()).processed == 0


# Inspection and backfill

@pytest.mark.asyncio
async def test_list_and_get_events(chain, make_supervisor, repayment_source):
    chain.head = 200
    chain.add(
        REPAYMENT_ADDRESS,
        paid_funder_log(1, 10, 150, tx=1),
        paid_funder_log(1, 20, 160, tx=2),
    )
    supervisor = make_supervisor(FakeHandler())
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)

    page = await supervisor.list_events(EventFilters(limit=1))
    assert page.total == 2
    assert page.events[0].block_number == 160

    event = await supervisor.get_event(page.events[0].id)
    assert event.decoded_args == {"projectId": "1", "amount": "20"}
    assert await supervisor.get_event(9999) is None


@pytest.mark.asyncio
async def test_backfill_running_source(chain, make_supervisor, cursor_store, repayment_source):
    chain.head = 200
    supervisor = make_supervisor(FakeHandler())
    await supervisor.start([repayment_source])
    await first_ticks(supervisor)
    chain.add(REPAYMENT_ADDRESS, paid_funder_log(1, 10, 120, tx=1))

    result = await supervisor.backfill(repayment_source, 100, 150)

    assert result.outcome == TickOutcome.ADVANCED
    assert result.events_stored == 1
    assert (await cursor_store.get(repayment_source.key)).last_processed_height == 188


@pytest.mark.asyncio
async def test_backfill_rejects_unknown_source_and_bad_range(make_supervisor, repayment_source):
    supervisor = make_supervisor(FakeHandler())
    await supervisor.start([repayment_source])

    with pytest.raises(SourceNotFoundError):
        await supervisor.backfill(allocation_source(), 0, 10)
    with pytest.raises(ConfigurationError):
        await supervisor.backfill(repayment_source, 10, 5)
