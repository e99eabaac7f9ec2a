"""
Custom exception classes for the indexer.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class IndexerException(Exception):
    """Base exception class for the chain event indexer."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(IndexerException):
    """Raised when a source configuration is invalid or duplicated."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class PersistenceError(IndexerException):
    """Raised when the cursor or event store cannot be written."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "PERSISTENCE_ERROR", details)


class TransportError(IndexerException):
    """Raised when the chain RPC is unreachable or returns a malformed response."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "TRANSPORT_ERROR", details)


class DecodeError(IndexerException):
    """Describes a log that could not be decoded against its schema."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DECODE_ERROR", details)


class BusinessLogicError(IndexerException):
    """Raised by business handlers when an event cannot be applied yet."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "BUSINESS_LOGIC_ERROR", details)


class NotFoundError(IndexerException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class SourceNotFoundError(NotFoundError):
    """Raised when an operation names a source the supervisor does not run."""

    def __init__(self, source_key: str):
        super().__init__(
            f"Source not configured: {source_key}",
            {"source": source_key}
        )


class PaymentNotFoundError(BusinessLogicError):
    """Raised when an escrow event references a payment that is not recorded yet."""

    def __init__(self, project_id: int, consideration_ref: str):
        super().__init__(
            f"No payment for project {project_id} with consideration ref {consideration_ref}",
            {"project_id": project_id, "consideration_ref": consideration_ref}
        )
