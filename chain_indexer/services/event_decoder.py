"""
Event decoder for escrow contract logs.

Maps a raw log to a typed payload using the event ABI of the source's
schema kind. Decoding is total: anything that cannot be decoded comes back
as a DecodeFailure value so the poller can still record the log.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, Union

import structlog
from eth_abi import decode as abi_decode
from eth_utils import decode_hex, encode_hex, keccak

from chain_indexer.core.exceptions import DecodeError
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
from chain_indexer.indexer.core.types import RawLog, SchemaKind


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AbiInput:
    """One event argument."""
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    """ABI description of one event and the payload it decodes into."""
    payload_type: Type[EventPayload]
    inputs: Tuple[AbiInput, ...]

    @property
    def name(self) -> str:
        return self.payload_type.event_name

    @property
    def signature_text(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic(self) -> str:
        return encode_hex(keccak(text=self.signature_text))


@dataclass(frozen=True)
class DecodeFailure:
    """A log that could not be decoded, with the reason."""
    reason: str
    signature: Optional[str] = None

    def as_error(self) -> DecodeError:
        return DecodeError(self.reason, {"signature": self.signature})


DecodeResult = Union[EventPayload, DecodeFailure]


def _normalize(abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return value.lower()
    if abi_type.startswith("bytes"):
        return encode_hex(value)
    if abi_type.endswith("[]"):
        return [_normalize(abi_type[:-2], v) for v in value]
    return value


class SchemaDecoder:
    """Decodes logs of one schema kind, matching on the signature topic."""

    def __init__(self, specs: Sequence[EventSpec]):
        self.specs: Dict[str, EventSpec] = {spec.topic: spec for spec in specs}

    def decode(self, log: RawLog) -> EventPayload:
        """
        Decode a log against the registered specs.

        Raises:
            DecodeError: If the log matches no registered event
        """
        if not log.topics:
            raise DecodeError("Log has no topics")

        signature = log.topics[0].lower()
        spec = self.specs.get(signature)
        if spec is None:
            raise DecodeError("Unknown event signature", {"signature": signature})

        indexed = [i for i in spec.inputs if i.indexed]
        if len(log.topics) - 1 != len(indexed):
            raise DecodeError(
                f"Expected {len(indexed)} indexed topics for {spec.name}, got {len(log.topics) - 1}",
                {"signature": signature}
            )

        values: Dict[str, Any] = {}
        for abi_input, topic in zip(indexed, log.topics[1:]):
            (value,) = abi_decode([abi_input.type], decode_hex(topic))
            values[abi_input.name] = _normalize(abi_input.type, value)

        plain = [i for i in spec.inputs if not i.indexed]
        decoded = abi_decode([i.type for i in plain], decode_hex(log.data or "0x"))
        for abi_input, value in zip(plain, decoded):
            values[abi_input.name] = _normalize(abi_input.type, value)

        return spec.payload_type.from_args(values)


REPAYMENT_ESCROW_EVENTS: List[EventSpec] = [
    EventSpec(ProceedsReceived, (
        AbiInput("projectId", "uint256", indexed=True),
        AbiInput("amount", "uint256"),
        AbiInput("considerationRef", "bytes32"),
    )),
    EventSpec(PaidFunder, (
        AbiInput("projectId", "uint256", indexed=True),
        AbiInput("amount", "uint256"),
    )),
    EventSpec(PaidPlatform, (
        AbiInput("projectId", "uint256", indexed=True),
        AbiInput("amount", "uint256"),
    )),
    EventSpec(PaidSteward, (
        AbiInput("projectId", "uint256", indexed=True),
        AbiInput("amount", "uint256"),
    )),
]

ALLOCATION_ESCROW_EVENTS: List[EventSpec] = [
    EventSpec(UnitsSold, (
        AbiInput("projectId", "uint256", indexed=True),
        AbiInput("beneficiary", "address", indexed=True),
        AbiInput("tokenIds", "uint256[]"),
        AbiInput("amounts", "uint256[]"),
        AbiInput("considerationRef", "bytes32"),
        AbiInput("proceeds", "uint256"),
    )),
    EventSpec(MarketWindowOpened, (
        AbiInput("projectId", "uint256", indexed=True),
        AbiInput("closesAt", "uint64"),
    )),
    EventSpec(MarketWindowExtended, (
        AbiInput("projectId", "uint256", indexed=True),
        AbiInput("newClosesAt", "uint64"),
    )),
]


class EventDecoder:
    """
    Registry of schema decoders keyed by schema kind.

    decode() never raises: unknown schema kinds, unknown signatures and
    malformed payloads all produce a DecodeFailure.
    """

    def __init__(self, decoders: Optional[Dict[SchemaKind, SchemaDecoder]] = None):
        self.logger = logger.bind(service="event_decoder")
        if decoders is None:
            decoders = {
                SchemaKind.REPAYMENT_ESCROW: SchemaDecoder(REPAYMENT_ESCROW_EVENTS),
                SchemaKind.ALLOCATION_ESCROW: SchemaDecoder(ALLOCATION_ESCROW_EVENTS),
            }
        self._decoders: Dict[SchemaKind, SchemaDecoder] = dict(decoders)

    def register(self, schema_kind: SchemaKind, decoder: SchemaDecoder) -> None:
        """Register or replace the decoder for a schema kind."""
        self._decoders[schema_kind] = decoder

    def supports(self, schema_kind: SchemaKind) -> bool:
        return schema_kind in self._decoders

    def decode(self, schema_kind: SchemaKind, log: RawLog) -> DecodeResult:
        """Decode a raw log, returning a payload or a DecodeFailure."""
        decoder = self._decoders.get(schema_kind)
        if decoder is None:
            kind = getattr(schema_kind, "value", schema_kind)
            return DecodeFailure(f"No decoder registered for {kind}", log.signature)

        try:
            return decoder.decode(log)
        except DecodeError as e:
            self.logger.warning(
                "Failed to decode event",
                error=e.message,
                signature=log.signature,
                tx_hash=log.tx_hash,
                log_index=log.log_index
            )
            return DecodeFailure(e.message, log.signature)
        except Exception as e:
            # eth-abi raises a family of decoding errors on truncated or garbled data
            self.logger.warning(
                "Malformed event payload",
                error=str(e),
                signature=log.signature,
                tx_hash=log.tx_hash,
                log_index=log.log_index
            )
            return DecodeFailure(f"Malformed log: {e}", log.signature)


def event_topic(payload_type: Type[EventPayload]) -> str:
    """Signature topic of a known payload type."""
    for spec in REPAYMENT_ESCROW_EVENTS + ALLOCATION_ESCROW_EVENTS:
        if spec.payload_type is payload_type:
            return spec.topic
    raise KeyError(payload_type.event_name)
