"""
Exception hierarchy for the shieldsync cache, scanner and rewind layers.

Provides typed exceptions so callers can tell corruption apart from chain
discontinuities, transient storage failures and policy rejections, and react
to each (purge-and-refetch, retry, refuse) without parsing messages.
"""

from __future__ import annotations
from typing import Optional, Any, Dict


class SyncError(Exception):
    """Base exception for all cache, scan and rewind errors.

    Attributes:
        message: Human-readable error description
        details: Additional context about the error
        recoverable: Whether the operation can be retried
    """

    recoverable = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if recoverable is not None:
            self.recoverable = recoverable


# ==================== Chain Validity Errors ====================


class ValidationError(SyncError):
    """Raised when cached or scanned blocks violate chain continuity rules."""
    pass


class InvalidChainError(ValidationError):
    """Raised when the hash chain or height sequence breaks.

    Everything at or above ``lower_bound`` is untrustworthy and must be
    discarded and refetched before scanning proceeds.
    """

    PREV_HASH_MISMATCH = "prev_hash_mismatch"
    BLOCK_HEIGHT_DISCONTINUITY = "block_height_discontinuity"

    def __init__(
        self,
        message: str,
        lower_bound: int,
        cause: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.lower_bound = lower_bound
        self.cause = cause


class PrevHashMismatchError(InvalidChainError):
    """Raised when a block's prev_hash does not match its predecessor's hash."""

    def __init__(self, height: int, **kwargs: Any) -> None:
        super().__init__(
            f"The hash of block {height} did not match the hash "
            f"committed to in the subsequent block.",
            lower_bound=height,
            cause=InvalidChainError.PREV_HASH_MISMATCH,
            **kwargs,
        )
        self.height = height


class BlockHeightDiscontinuityError(InvalidChainError):
    """Raised when a block arrives at any height other than the next expected one."""

    def __init__(self, expected_height: int, actual_height: int, **kwargs: Any) -> None:
        super().__init__(
            f"Block height discontinuity at height {expected_height}: "
            f"next height is {actual_height}",
            lower_bound=expected_height,
            cause=InvalidChainError.BLOCK_HEIGHT_DISCONTINUITY,
            **kwargs,
        )
        self.expected_height = expected_height
        self.actual_height = actual_height


# ==================== Storage Errors ====================


class StorageError(SyncError):
    """Raised when cache or wallet storage operations fail."""
    recoverable = True


class DatabaseError(StorageError):
    """Raised when the underlying database or filesystem call fails."""
    pass


class CorruptedDataError(StorageError):
    """Raised when stored data disagrees with its own decoded content."""
    recoverable = False

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(f"Data DB is corrupted: {message}", **kwargs)
        self.reason = message


class BlockDecodeError(StorageError):
    """Raised when a stored or received payload does not decode as a compact block."""
    recoverable = False

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class TableNotEmptyError(StorageError):
    """Raised on an illegal attempt to reinitialize already-populated wallet state."""
    recoverable = False

    def __init__(self, table: str, **kwargs: Any) -> None:
        super().__init__(f"Table {table} is not empty", **kwargs)
        self.table = table


class UnrecoverableStorageError(BaseException):
    """Raised when a rollback fails while recovering from another failure.

    Derives from ``BaseException`` so ordinary ``except Exception`` handlers
    cannot swallow it: the persistent index can no longer be trusted and the
    process must stop.
    """

    def __init__(self, primary_error: BaseException, rollback_error: BaseException) -> None:
        super().__init__(
            f"Rollback failed with error {rollback_error} while attempting to recover "
            f"from error {primary_error}; database is likely corrupt."
        )
        self.primary_error = primary_error
        self.rollback_error = rollback_error


# ==================== Wallet Errors ====================


class WalletError(SyncError):
    """Raised when a wallet-store operation is rejected."""
    pass


class RequestedRewindInvalidError(WalletError):
    """Raised when a rewind would discard history the cache cannot re-supply."""

    def __init__(
        self,
        safe_height: int,
        requested_height: int,
        pruning_depth: int,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            f"A rewind must be either of less than {pruning_depth} blocks, or at least "
            f"back to block {safe_height} for your wallet; the requested height "
            f"was {requested_height}.",
            **kwargs,
        )
        self.safe_height = safe_height
        self.requested_height = requested_height
        self.pruning_depth = pruning_depth


class AccountIdDiscontinuityError(WalletError):
    """Raised when accounts are added with non-sequential identifiers."""

    def __init__(self, expected: int, actual: int, **kwargs: Any) -> None:
        super().__init__(
            f"Wallet account identifiers must be sequential: expected {expected}, got {actual}.",
            **kwargs,
        )
        self.expected = expected
        self.actual = actual


class UnknownAccountError(WalletError):
    """Raised when an operation names an account the wallet does not have."""

    def __init__(self, account: int, **kwargs: Any) -> None:
        super().__init__(f"Unknown account {account}", **kwargs)
        self.account = account


# ==================== Configuration Errors ====================


class ConfigurationError(SyncError):
    """Raised when configuration values are missing or invalid."""
    recoverable = False


# ==================== Utility Functions ====================


def is_recoverable_error(exc: BaseException) -> bool:
    """Check if an exception represents a recoverable error.

    Args:
        exc: The exception to check

    Returns:
        True if the error is transient and the operation can be retried
    """
    if isinstance(exc, SyncError):
        return exc.recoverable

    recoverable_types = (
        ConnectionError,
        TimeoutError,
        OSError,
    )
    return isinstance(exc, recoverable_types)


def get_error_context(exc: BaseException) -> Dict[str, Any]:
    """Extract error context from an exception for logging.

    Args:
        exc: The exception to extract context from

    Returns:
        Dictionary containing error type, message, and any additional details
    """
    context: Dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
    }

    if isinstance(exc, SyncError):
        context["recoverable"] = exc.recoverable
        if exc.details:
            context["details"] = exc.details

    if isinstance(exc, InvalidChainError):
        context["lower_bound"] = exc.lower_bound
        context["cause"] = exc.cause

    if isinstance(exc, RequestedRewindInvalidError):
        context["safe_height"] = exc.safe_height
        context["requested_height"] = exc.requested_height

    return context
