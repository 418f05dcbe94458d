"""Service error hierarchy for content archival.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all classified errors (stable code + structured context)
- ConfigurationError: Missing or invalid configuration
- ContentError: URL validation and content download failures
- IPFSError: Pinning service failures
- DatabaseError: Record store failures
- InvalidEcocertIdError: Malformed ecocert identifiers
- ApplicationError: Application lifecycle misuse

Retryability is decided by the error code, at the layer that raises it.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from ecocert_archiver.core.timezone import utcnow


class ErrorCategory(str, Enum):
    """Error categories used for classification and reporting."""

    CONFIGURATION = "configuration"
    DATABASE = "database"
    NETWORK = "network"
    VALIDATION = "validation"
    IPFS = "ipfs"


class ServiceError(Exception):
    """Base exception for all service errors.

    Attributes:
        message: Human-readable description
        code: Stable machine-readable code (e.g. "FILE_TOO_LARGE")
        context: Optional structured context for logging
        timestamp: When the error was raised (naive UTC)
    """

    category: ErrorCategory = ErrorCategory.CONFIGURATION
    retryable_codes: frozenset[str] = frozenset()

    def __init__(self, message: str, code: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.context = context or {}
        self.timestamp: datetime = utcnow()

    @property
    def retryable(self) -> bool:
        """Whether the failure may succeed if the operation is attempted again."""
        return self.code in self.retryable_codes

    def __str__(self) -> str:
        return self.message


class ConfigurationError(ServiceError):
    """Missing or invalid configuration."""

    category = ErrorCategory.CONFIGURATION


class ContentError(ServiceError):
    """URL validation or content download failure.

    Validation and size-limit failures are permanent; I/O and transport
    failures are retryable.
    """

    category = ErrorCategory.NETWORK
    retryable_codes = frozenset({"STREAM_ERROR", "WRITE_ERROR", "READ_ERROR", "DOWNLOAD_FAILED"})

    def __init__(
        self,
        message: str,
        code: str,
        url: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message, code, {**(context or {}), "url": url})
        self.url = url


class IPFSError(ServiceError):
    """Pinning service failure."""

    category = ErrorCategory.IPFS
    retryable_codes = frozenset({"IPFS_RATE_LIMITED", "IPFS_UNAVAILABLE", "IPFS_NETWORK_ERROR"})


class DatabaseError(ServiceError):
    """Record store failure (not found, insert/update/query failure)."""

    category = ErrorCategory.DATABASE


class InvalidEcocertIdError(ServiceError):
    """Ecocert identifier is malformed (never retryable)."""

    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, ecocert_id: str):
        super().__init__(message, "INVALID_ECOCERT_ID", {"ecocert_id": ecocert_id})


class ApplicationError(ServiceError):
    """Application lifecycle misuse (not initialized, shutting down, nothing to process)."""

    category = ErrorCategory.CONFIGURATION
