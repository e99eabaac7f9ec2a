"""
Test event decoding and typed payloads.
"""

from eth_utils import encode_hex, keccak

from chain_indexer.indexer.core.events import (
    ProceedsReceived, UnitsSold, MarketWindowOpened, UnknownEvent, payload_from_record
)
from chain_indexer.indexer.core.types import SchemaKind
from chain_indexer.services.event_decoder import (
    DecodeFailure, EventDecoder, SchemaDecoder, REPAYMENT_ESCROW_EVENTS, event_topic
)

from conftest import (
    garbage_log, make_log, market_window_log, proceeds_log, ref_hex, units_sold_log
)


BUYER = "0x3333333333333333333333333333333333333333"


def test_topics_are_keccak_of_signature():
    assert event_topic(ProceedsReceived) == encode_hex(
        keccak(text="ProceedsReceived(uint256,uint256,bytes32)")
    )
    assert event_topic(UnitsSold) == encode_hex(
        keccak(text="UnitsSold(uint256,address,uint256[],uint256[],bytes32,uint256)")
    )


def test_decode_proceeds_received():
    decoder = EventDecoder()

    event = decoder.decode(SchemaKind.REPAYMENT_ESCROW, proceeds_log(7, 10**18, 42, 100, 1))

    assert event == ProceedsReceived(project_id=7, amount=10**18, consideration_ref=ref_hex(42))
    assert event.to_args() == {
        "projectId": "7",
        "amount": str(10**18),
        "considerationRef": ref_hex(42),
    }


def test_decode_units_sold():
    decoder = EventDecoder()
    log = units_sold_log(3, BUYER, [11, 12], [1, 2], 9, 5000, 100, 1)

    event = decoder.decode(SchemaKind.ALLOCATION_ESCROW, log)

    assert isinstance(event, UnitsSold)
    assert event.project_id == 3
    assert event.beneficiary == BUYER
    assert event.token_ids == [11, 12]
    assert event.amounts == [1, 2]
    assert event.consideration_ref == ref_hex(9)
    assert event.proceeds == 5000


def test_payload_rebuilt_from_stored_args():
    event = EventDecoder().decode(
        SchemaKind.ALLOCATION_ESCROW,
        units_sold_log(3, BUYER, [11, 12], [1, 2], 9, 5000, 100, 1)
    )

    rebuilt = payload_from_record("AllocationEscrow", "UnitsSold", event.to_args())

    assert rebuilt == event


def test_unknown_signature_is_decode_failure():
    result = EventDecoder().decode(SchemaKind.REPAYMENT_ESCROW, garbage_log(100, 1))

    assert isinstance(result, DecodeFailure)
    assert result.signature == "0x" + "ab" * 32


def test_event_from_other_schema_is_decode_failure():
    log = market_window_log(1, 1_700_000_000, 100, 1)

    assert isinstance(EventDecoder().decode(SchemaKind.ALLOCATION_ESCROW, log), MarketWindowOpened)
    assert isinstance(EventDecoder().decode(SchemaKind.REPAYMENT_ESCROW, log), DecodeFailure)


def test_truncated_data_is_decode_failure():
    good = proceeds_log(7, 100, 1, 100, 1)
    truncated = make_log(good.topics, good.data[:40], 100, 1)

    assert isinstance(EventDecoder().decode(SchemaKind.REPAYMENT_ESCROW, truncated), DecodeFailure)


def test_missing_indexed_topic_is_decode_failure():
    good = proceeds_log(7, 100, 1, 100, 1)
    log = make_log(good.topics[:1], good.data, 100, 1)

    assert isinstance(EventDecoder().decode(SchemaKind.REPAYMENT_ESCROW, log), DecodeFailure)


def test_empty_topics_is_decode_failure():
    log = make_log([], "0x", 100, 1)

    assert isinstance(EventDecoder().decode(SchemaKind.REPAYMENT_ESCROW, log), DecodeFailure)


def test_schema_without_decoder_is_decode_failure():
    result = EventDecoder().decode(SchemaKind.LIFT_UNITS, proceeds_log(7, 100, 1, 100, 1))

    assert isinstance(result, DecodeFailure)
    assert "LiftUnits" in result.reason


def test_register_decoder_for_new_schema():
    decoder = EventDecoder()
    decoder.register(SchemaKind.LIFT_UNITS, SchemaDecoder(REPAYMENT_ESCROW_EVENTS))

    assert decoder.supports(SchemaKind.LIFT_UNITS)
    assert isinstance(
        decoder.decode(SchemaKind.LIFT_UNITS, proceeds_log(7, 100, 1, 100, 1)),
        ProceedsReceived
    )


def test_unregistered_name_rebuilds_as_unknown():
    payload = payload_from_record("RepaymentEscrow", "Unknown", {})

    assert isinstance(payload, UnknownEvent)
    assert payload.to_args() == {}


def test_args_that_no_longer_fit_rebuild_as_unknown():
    payload = payload_from_record("RepaymentEscrow", "ProceedsReceived", {"projectId": "1"})

    assert isinstance(payload, UnknownEvent)
    assert payload.args == {"projectId": "1"}
