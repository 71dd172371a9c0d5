"""
Custom exception hierarchy for logvault.

Exception hierarchy:
- LogVaultError: Base exception for all logvault-specific errors
- ConfigurationError: Configuration and validation issues
- EnumerationError: The host log subsystem cannot be queried (cycle-fatal)
- ExportError / CompressionError / ClearError / ArchiveIOError: Per-channel
  archive pipeline failures
- ReconciliationError: Failures handling an auto-rotated file
- PurgeError: Per-file retention failures
- LockContention: Another cycle holds the run-lock (not a failure)

Each exception includes:
- error_code: Machine-readable error identifier
- context: Additional structured data for debugging
- is_retryable: Whether the operation can be retried on the next cycle
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes for categorization and monitoring."""

    # Configuration errors (1xxx)
    CONFIG_INVALID = "LOGVAULT_1001"
    CONFIG_MISSING = "LOGVAULT_1002"
    CONFIG_VALIDATION = "LOGVAULT_1003"
    CONFIG_SOURCE_PATH = "LOGVAULT_1004"

    # Inventory errors (2xxx)
    INVENTORY_UNAVAILABLE = "LOGVAULT_2001"
    INVENTORY_QUERY_FAILED = "LOGVAULT_2002"
    INVENTORY_TIMEOUT = "LOGVAULT_2003"

    # Archive pipeline errors (3xxx)
    ARCHIVE_EXPORT_FAILED = "LOGVAULT_3001"
    ARCHIVE_COMPRESSION_FAILED = "LOGVAULT_3002"
    ARCHIVE_VERIFY_FAILED = "LOGVAULT_3003"
    ARCHIVE_CLEAR_FAILED = "LOGVAULT_3004"
    ARCHIVE_IO_FAILED = "LOGVAULT_3005"
    RECONCILE_FAILED = "LOGVAULT_3101"

    # Retention errors (4xxx)
    PURGE_DELETE_FAILED = "LOGVAULT_4001"
    PURGE_SCAN_FAILED = "LOGVAULT_4002"

    # Run-lock (5xxx)
    LOCK_CONTENDED = "LOGVAULT_5001"
    LOCK_STARVED = "LOGVAULT_5002"

    # General errors (9xxx)
    UNKNOWN = "LOGVAULT_9999"


@dataclass
class LogVaultError(Exception):
    """
    Base exception for all logvault errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error identifier
        context: Additional structured data for debugging
        is_retryable: Whether the next cycle can safely retry the operation
        cause: Original exception that caused this error
    """

    message: str
    error_code: ErrorCode = ErrorCode.UNKNOWN
    context: dict[str, Any] = field(default_factory=dict)
    is_retryable: bool = False
    cause: Exception | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [f"[{self.error_code.value}] {self.message}"]
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f" ({context_str})")
        return "".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"context={self.context!r}, "
            f"is_retryable={self.is_retryable})"
        )

    @property
    def kind(self) -> str:
        """Short error kind used in audit events."""
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code.value,
            "message": self.message,
            "context": self.context,
            "is_retryable": self.is_retryable,
            "cause": str(self.cause) if self.cause else None,
        }


@dataclass
class ConfigurationError(LogVaultError):
    """Raised when configuration is invalid or missing."""

    error_code: ErrorCode = ErrorCode.CONFIG_INVALID

    @classmethod
    def missing_file(cls, path: str) -> ConfigurationError:
        """Create error for missing configuration file."""
        return cls(
            message=f"Configuration file not found: {path}",
            error_code=ErrorCode.CONFIG_MISSING,
            context={"path": path},
        )

    @classmethod
    def validation_failed(cls, field: str, value: Any, reason: str) -> ConfigurationError:
        """Create error for validation failure."""
        return cls(
            message=f"Configuration validation failed for '{field}': {reason}",
            error_code=ErrorCode.CONFIG_VALIDATION,
            context={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def invalid_source_path(cls, path: str, reason: str) -> ConfigurationError:
        """Create error for a missing or unusable source log directory."""
        return cls(
            message=f"Source log path is not usable: {reason}",
            error_code=ErrorCode.CONFIG_SOURCE_PATH,
            context={"path": path, "reason": reason},
        )


@dataclass
class EnumerationError(LogVaultError):
    """Raised when the host's log channels cannot be listed at all."""

    error_code: ErrorCode = ErrorCode.INVENTORY_UNAVAILABLE
    is_retryable: bool = True

    @classmethod
    def backend_unavailable(cls, backend: str, reason: str) -> EnumerationError:
        """Create error for an unreachable log subsystem."""
        return cls(
            message=f"Log backend '{backend}' cannot be queried: {reason}",
            error_code=ErrorCode.INVENTORY_UNAVAILABLE,
            context={"backend": backend, "reason": reason},
        )

    @classmethod
    def timeout(cls, backend: str, timeout_seconds: float) -> EnumerationError:
        """Create error for an enumeration that did not finish in time."""
        return cls(
            message=f"Log backend '{backend}' timed out after {timeout_seconds}s",
            error_code=ErrorCode.INVENTORY_TIMEOUT,
            context={"backend": backend, "timeout_seconds": timeout_seconds},
        )


@dataclass
class ExportError(LogVaultError):
    """Raised when a live channel cannot be exported into staging."""

    error_code: ErrorCode = ErrorCode.ARCHIVE_EXPORT_FAILED
    is_retryable: bool = True

    @classmethod
    def failed(cls, channel: str, destination: str, reason: str) -> ExportError:
        """Create error for a failed export."""
        return cls(
            message=f"Export of channel '{channel}' failed: {reason}",
            context={"channel": channel, "destination": destination, "reason": reason},
        )


@dataclass
class CompressionError(LogVaultError):
    """Raised when staged data cannot be compressed into a verified archive."""

    error_code: ErrorCode = ErrorCode.ARCHIVE_COMPRESSION_FAILED
    is_retryable: bool = True

    @classmethod
    def failed(cls, source: str, destination: str, reason: str) -> CompressionError:
        """Create error for a failed compression."""
        return cls(
            message=f"Compression into {destination} failed: {reason}",
            context={"source": source, "destination": destination, "reason": reason},
        )

    @classmethod
    def verification_failed(cls, destination: str, reason: str) -> CompressionError:
        """Create error for an archive that failed verification."""
        return cls(
            message=f"Archive verification failed for {destination}: {reason}",
            error_code=ErrorCode.ARCHIVE_VERIFY_FAILED,
            context={"destination": destination, "reason": reason},
        )


@dataclass
class ClearError(LogVaultError):
    """Raised when a live channel cannot be cleared after archiving."""

    error_code: ErrorCode = ErrorCode.ARCHIVE_CLEAR_FAILED
    is_retryable: bool = True

    @classmethod
    def failed(cls, channel: str, reason: str) -> ClearError:
        """Create error for a failed clear."""
        return cls(
            message=f"Clearing channel '{channel}' failed: {reason}",
            context={"channel": channel, "reason": reason},
        )


@dataclass
class ArchiveIOError(LogVaultError):
    """Raised for filesystem failures around archive targets and staging."""

    error_code: ErrorCode = ErrorCode.ARCHIVE_IO_FAILED
    is_retryable: bool = True

    @classmethod
    def failed(cls, path: str, operation: str, reason: str) -> ArchiveIOError:
        """Create error for a filesystem operation failure."""
        return cls(
            message=f"Failed to {operation} {path}: {reason}",
            context={"path": path, "operation": operation, "reason": reason},
        )


@dataclass
class ReconciliationError(LogVaultError):
    """Raised when an auto-rotated file cannot be reconciled."""

    error_code: ErrorCode = ErrorCode.RECONCILE_FAILED
    is_retryable: bool = True

    @classmethod
    def failed(cls, path: str, reason: str) -> ReconciliationError:
        """Create error for a failed reconciliation."""
        return cls(
            message=f"Reconciliation of {path} failed: {reason}",
            context={"path": path, "reason": reason},
        )


@dataclass
class PurgeError(LogVaultError):
    """Raised when an expired archive cannot be removed."""

    error_code: ErrorCode = ErrorCode.PURGE_DELETE_FAILED
    is_retryable: bool = True

    @classmethod
    def delete_failed(cls, path: str, reason: str) -> PurgeError:
        """Create error for a failed deletion."""
        return cls(
            message=f"Failed to delete expired archive {path}: {reason}",
            context={"path": path, "reason": reason},
        )

    @classmethod
    def scan_failed(cls, root: str, reason: str) -> PurgeError:
        """Create error for an archive tree that could not be scanned."""
        return cls(
            message=f"Failed to scan archive tree {root}: {reason}",
            error_code=ErrorCode.PURGE_SCAN_FAILED,
            context={"root": root, "reason": reason},
        )


@dataclass
class LockContention(LogVaultError):
    """Raised when the run-lock is held by another cycle."""

    error_code: ErrorCode = ErrorCode.LOCK_CONTENDED
    is_retryable: bool = True
    consecutive_skips: int = 0

    @classmethod
    def held(cls, lock_path: str, attempts: int, consecutive_skips: int = 0) -> LockContention:
        """Create contention notice for a lock held elsewhere."""
        return cls(
            message=f"Run-lock {lock_path} is held by another cycle",
            context={"lock_path": lock_path, "attempts": attempts},
            consecutive_skips=consecutive_skips,
        )

    @property
    def starved(self) -> bool:
        """Whether contention has exceeded the configured skip budget."""
        return self.error_code == ErrorCode.LOCK_STARVED
