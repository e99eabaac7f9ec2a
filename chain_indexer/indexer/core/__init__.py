"""
Core indexer types and decoded event payloads.
"""

from .types import (
    IndexerStatus,
    SchemaKind,
    SourceConfig,
    SourceKey,
    RawLog,
    ScanRange,
    TickOutcome,
    TickResult,
    ProcessingStats,
)
from .events import EventPayload, UnknownEvent, DecodedEvent, payload_from_record

__all__ = [
    "IndexerStatus",
    "SchemaKind",
    "SourceConfig",
    "SourceKey",
    "RawLog",
    "ScanRange",
    "TickOutcome",
    "TickResult",
    "ProcessingStats",
    "EventPayload",
    "UnknownEvent",
    "DecodedEvent",
    "payload_from_record",
]
