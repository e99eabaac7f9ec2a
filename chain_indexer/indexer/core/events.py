"""
Typed payloads for decoded escrow events.

Each known event has its own frozen dataclass; logs no decoder understands
are carried as UnknownEvent. Payloads render to a JSON-safe dict keyed by
the ABI argument names (uint values as decimal strings) and can be rebuilt
from that dict, which is how the retry sweep re-applies stored events.
"""

import typing
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Dict, List, Optional, Type, Union

from chain_indexer.core.config import IndexerConfig

from .types import SchemaKind


def _abi(name: str) -> Any:
    return field(metadata={"abi": name})


def _to_json(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    return value


def _from_json(tp: Any, value: Any) -> Any:
    if tp is int:
        return int(value)
    if typing.get_origin(tp) in (list, List):
        (item_type,) = typing.get_args(tp)
        return [_from_json(item_type, v) for v in value]
    if tp is str:
        return str(value)
    return value


@dataclass(frozen=True)
class EventPayload:
    """Base class of all decoded event payloads."""

    event_name: ClassVar[str] = ""
    schema_kind: ClassVar[Optional[SchemaKind]] = None

    def to_args(self) -> Dict[str, Any]:
        return {
            f.metadata.get("abi", f.name): _to_json(getattr(self, f.name))
            for f in fields(self)
        }

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "EventPayload":
        hints = typing.get_type_hints(cls)
        kwargs = {}
        for f in fields(cls):
            key = f.metadata.get("abi", f.name)
            kwargs[f.name] = _from_json(hints[f.name], args[key])
        return cls(**kwargs)


# RepaymentEscrow

@dataclass(frozen=True)
class ProceedsReceived(EventPayload):
    event_name: ClassVar[str] = "ProceedsReceived"
    schema_kind: ClassVar[Optional[SchemaKind]] = SchemaKind.REPAYMENT_ESCROW

    project_id: int = _abi("projectId")
    amount: int = _abi("amount")
    consideration_ref: str = _abi("considerationRef")


@dataclass(frozen=True)
class PaidFunder(EventPayload):
    event_name: ClassVar[str] = "PaidFunder"
    schema_kind: ClassVar[Optional[SchemaKind]] = SchemaKind.REPAYMENT_ESCROW

    project_id: int = _abi("projectId")
    amount: int = _abi("amount")


@dataclass(frozen=True)
class PaidPlatform(EventPayload):
    event_name: ClassVar[str] = "PaidPlatform"
    schema_kind: ClassVar[Optional[SchemaKind]] = SchemaKind.REPAYMENT_ESCROW

    project_id: int = _abi("projectId")
    amount: int = _abi("amount")


@dataclass(frozen=True)
class PaidSteward(EventPayload):
    event_name: ClassVar[str] = "PaidSteward"
    schema_kind: ClassVar[Optional[SchemaKind]] = SchemaKind.REPAYMENT_ESCROW

    project_id: int = _abi("projectId")
    amount: int = _abi("amount")


# AllocationEscrow

@dataclass(frozen=True)
class UnitsSold(EventPayload):
    event_name: ClassVar[str] = "UnitsSold"
    schema_kind: ClassVar[Optional[SchemaKind]] = SchemaKind.ALLOCATION_ESCROW

    project_id: int = _abi("projectId")
    beneficiary: str = _abi("beneficiary")
    token_ids: List[int] = _abi("tokenIds")
    amounts: List[int] = _abi("amounts")
    consideration_ref: str = _abi("considerationRef")
    proceeds: int = _abi("proceeds")


@dataclass(frozen=True)
class MarketWindowOpened(EventPayload):
    event_name: ClassVar[str] = "MarketWindowOpened"
    schema_kind: ClassVar[Optional[SchemaKind]] = SchemaKind.ALLOCATION_ESCROW

    project_id: int = _abi("projectId")
    closes_at: int = _abi("closesAt")


@dataclass(frozen=True)
class MarketWindowExtended(EventPayload):
    event_name: ClassVar[str] = "MarketWindowExtended"
    schema_kind: ClassVar[Optional[SchemaKind]] = SchemaKind.ALLOCATION_ESCROW

    project_id: int = _abi("projectId")
    new_closes_at: int = _abi("newClosesAt")


@dataclass(frozen=True)
class UnknownEvent(EventPayload):
    """Catch-all for logs that could not be decoded."""

    event_name: ClassVar[str] = IndexerConfig.UNKNOWN_EVENT_NAME

    args: Dict[str, Any] = field(default_factory=dict)

    def to_args(self) -> Dict[str, Any]:
        return dict(self.args)

    @classmethod
    def from_args(cls, args: Dict[str, Any]) -> "UnknownEvent":
        return cls(args=dict(args or {}))


DecodedEvent = Union[
    ProceedsReceived,
    PaidFunder,
    PaidPlatform,
    PaidSteward,
    UnitsSold,
    MarketWindowOpened,
    MarketWindowExtended,
    UnknownEvent,
]


PAYLOAD_TYPES: Dict[SchemaKind, Dict[str, Type[EventPayload]]] = {
    SchemaKind.REPAYMENT_ESCROW: {
        t.event_name: t for t in (ProceedsReceived, PaidFunder, PaidPlatform, PaidSteward)
    },
    SchemaKind.ALLOCATION_ESCROW: {
        t.event_name: t for t in (UnitsSold, MarketWindowOpened, MarketWindowExtended)
    },
    SchemaKind.LIFT_UNITS: {},
}


def payload_from_record(schema_kind: str, event_name: str, args: Dict[str, Any]) -> EventPayload:
    """
    Rebuild the typed payload of a stored event.

    Rows whose name is not registered for their schema kind, or whose
    stored args no longer fit the payload, come back as UnknownEvent.
    """
    try:
        payload_type = PAYLOAD_TYPES[SchemaKind(schema_kind)].get(event_name)
    except ValueError:
        payload_type = None
    if payload_type is None:
        return UnknownEvent(args=dict(args or {}))
    try:
        return payload_type.from_args(args or {})
    except (KeyError, TypeError, ValueError):
        return UnknownEvent(args=dict(args or {}))
