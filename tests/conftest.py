"""Pytest configuration and shared fixtures for all tests."""

import os

# Minimal environment for tests; set before settings are imported
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_indexer.db")
os.environ.setdefault("LOG_FORMAT", "console")

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

import pytest
from eth_abi import encode
from sqlalchemy.ext.asyncio import create_async_engine

from chain_indexer.core.database import DatabaseManager, create_session_maker
from chain_indexer.indexer.core.dispatcher import EventDispatcher
from chain_indexer.indexer.core.events import (
    ProceedsReceived, PaidFunder, UnitsSold, MarketWindowOpened
)
from chain_indexer.indexer.core.poller import Poller
from chain_indexer.indexer.core.types import RawLog, SchemaKind, SourceConfig
from chain_indexer.indexer.handlers.base import BusinessHandler, EventEnvelope, HandlerResult
from chain_indexer.services.chain_reader import ChainReader
from chain_indexer.services.cursor_store import CursorStore
from chain_indexer.services.event_decoder import EventDecoder, event_topic
from chain_indexer.services.event_store import EventStore


NETWORK_ID = 11155111
REPAYMENT_ADDRESS = "0x1111111111111111111111111111111111111111"
ALLOCATION_ADDRESS = "0x2222222222222222222222222222222222222222"
BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


# Log builders

def _topic_uint(value: int) -> str:
    return "0x" + encode(["uint256"], [value]).hex()


def _topic_address(value: str) -> str:
    return "0x" + encode(["address"], [value]).hex()


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def block_hash(block_number: int) -> str:
    return "0x" + f"b{block_number:063x}"


def ref(n: int) -> bytes:
    return n.to_bytes(32, "big")


def ref_hex(n: int) -> str:
    return "0x" + ref(n).hex()


def make_log(
    topics: List[str],
    data: str,
    block_number: int,
    tx: int,
    log_index: int = 0
) -> RawLog:
    return RawLog(
        tx_hash=tx_hash(tx),
        log_index=log_index,
        block_number=block_number,
        block_hash=block_hash(block_number),
        topics=topics,
        data=data,
        tx_index=0,
    )


def proceeds_log(project_id: int, amount: int, consideration: int, block_number: int, tx: int, log_index: int = 0) -> RawLog:
    return make_log(
        [event_topic(ProceedsReceived), _topic_uint(project_id)],
        "0x" + encode(["uint256", "bytes32"], [amount, ref(consideration)]).hex(),
        block_number, tx, log_index
    )


def paid_funder_log(project_id: int, amount: int, block_number: int, tx: int, log_index: int = 0) -> RawLog:
    return make_log(
        [event_topic(PaidFunder), _topic_uint(project_id)],
        "0x" + encode(["uint256"], [amount]).hex(),
        block_number, tx, log_index
    )


def units_sold_log(
    project_id: int,
    beneficiary: str,
    token_ids: List[int],
    amounts: List[int],
    consideration: int,
    proceeds: int,
    block_number: int,
    tx: int,
    log_index: int = 0
) -> RawLog:
    return make_log(
        [event_topic(UnitsSold), _topic_uint(project_id), _topic_address(beneficiary)],
        "0x" + encode(
            ["uint256[]", "uint256[]", "bytes32", "uint256"],
            [token_ids, amounts, ref(consideration), proceeds]
        ).hex(),
        block_number, tx, log_index
    )


def market_window_log(project_id: int, closes_at: int, block_number: int, tx: int, log_index: int = 0) -> RawLog:
    return make_log(
        [event_topic(MarketWindowOpened), _topic_uint(project_id)],
        "0x" + encode(["uint64"], [closes_at]).hex(),
        block_number, tx, log_index
    )


def garbage_log(block_number: int, tx: int, log_index: int = 0) -> RawLog:
    return make_log(["0x" + "ab" * 32], "0xdeadbeef", block_number, tx, log_index)


# Test doubles

class FakeChainReader(ChainReader):
    """In-memory chain with a settable head and per-contract logs."""

    def __init__(self, head: int = 0):
        self.head = head
        self.logs: Dict[str, List[RawLog]] = {}
        self.get_logs_calls: List[Tuple[int, str, int, int]] = []
        self.timestamp_calls: List[str] = []
        self.head_error: Optional[Exception] = None
        self.logs_error: Optional[Exception] = None
        self.logs_gate: Optional[asyncio.Event] = None
        self.logs_delay: float = 0.0
        self.networks: Optional[Set[int]] = None

    def add(self, contract_address: str, *logs: RawLog) -> None:
        self.logs.setdefault(contract_address.lower(), []).extend(logs)

    def supports(self, network_id: int) -> bool:
        return self.networks is None or network_id in self.networks

    async def head_height(self, network_id: int) -> int:
        if self.head_error:
            raise self.head_error
        return self.head

    async def get_logs(self, network_id: int, contract_address: str, from_height: int, to_height: int) -> List[RawLog]:
        self.get_logs_calls.append((network_id, contract_address, from_height, to_height))
        if self.logs_gate is not None:
            await self.logs_gate.wait()
        if self.logs_delay:
            await asyncio.sleep(self.logs_delay)
        if self.logs_error:
            raise self.logs_error
        return sorted(
            (
                log for log in self.logs.get(contract_address.lower(), [])
                if from_height <= log.block_number <= to_height
            ),
            key=lambda log: (log.block_number, log.log_index)
        )

    async def block_timestamp(self, network_id: int, block_hash_: str) -> datetime:
        self.timestamp_calls.append(block_hash_)
        return BASE_TIME + timedelta(seconds=len(self.timestamp_calls))


Outcome = Union[bool, str, Exception]


class FakeHandler(BusinessHandler):
    """Records envelopes; replays scripted outcomes, then succeeds."""

    def __init__(self, outcomes: Sequence[Outcome] = (), delay: float = 0.0):
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls: List[EventEnvelope] = []

    async def apply(self, envelope: EventEnvelope) -> HandlerResult:
        self.calls.append(envelope)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is True:
            return HandlerResult.ok()
        return HandlerResult.failed(outcome if isinstance(outcome, str) else "handler failed")


# Fixtures

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'indexer.db'}")
    await DatabaseManager.create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_maker(engine)


@pytest.fixture
def cursor_store(session_factory):
    return CursorStore(session_factory)


@pytest.fixture
def event_store(session_factory):
    return EventStore(session_factory)


@pytest.fixture
def chain():
    return FakeChainReader()


@pytest.fixture
def handler():
    return FakeHandler()


@pytest.fixture
def repayment_source():
    return SourceConfig(
        network_id=NETWORK_ID,
        contract_address=REPAYMENT_ADDRESS,
        schema_kind=SchemaKind.REPAYMENT_ESCROW,
        start_height=0,
        confirmations=12,
        batch_size=1000,
    )


@pytest.fixture
def make_poller(chain, cursor_store, event_store):
    def _make(
        config: SourceConfig,
        handler: BusinessHandler,
        max_retries: int = 3,
        handler_timeout: float = 5.0,
        rpc_timeout: float = 5.0
    ) -> Poller:
        dispatcher = EventDispatcher(
            handler,
            event_store,
            max_retries=max_retries,
            handler_timeout=handler_timeout
        )
        return Poller(
            config,
            chain,
            EventDecoder(),
            cursor_store,
            event_store,
            dispatcher,
            poll_interval=3600,
            rpc_timeout=rpc_timeout
        )
    return _make
