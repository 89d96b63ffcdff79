"""
Error taxonomy for quota-ledger.

This module provides a small hierarchical exception system with:
- Error codes for programmatic handling
- Retryable vs non-retryable classification
- Structured context for debugging
- An HTTP status hint for adapters that surface errors to end users

Ledger errors (``LedgerError``) are business-rule violations and are never
retried. Store errors (``StoreError``) describe infrastructure conditions and
are safe for the end user to retry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes for the quota ledger."""

    # Ledger errors (1xxx)
    LEDGER_ERROR = "ERR_1000"
    PROFILE_NOT_FOUND = "ERR_1001"
    QUOTA_EXCEEDED = "ERR_1002"
    INVALID_ARGUMENT = "ERR_1003"

    # Store errors (2xxx)
    STORE_ERROR = "ERR_2000"
    TRANSACTION_CONFLICT = "ERR_2001"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "ERR_9000"


@dataclass
class ErrorContext:
    """Structured context for error debugging."""

    uid: str | None = None
    session_id: str | None = None
    operation: str | None = None
    attempt: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "session_id": self.session_id,
            "operation": self.operation,
            "attempt": self.attempt,
            **self.extra,
        }


class QuotaLedgerError(Exception):
    """
    Base exception for all quota-ledger errors.

    Attributes:
        code: Standardized error code for programmatic handling
        message: Human-readable error message
        retryable: Whether the end user may retry the operation
        http_status: Status an HTTP adapter should answer with
        context: Structured debugging context
        cause: Original exception that caused this error
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False
    http_status: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.context = context or ErrorContext()
        self.cause = cause

    def __str__(self) -> str:
        parts = [f"[{self.code.value}] {self.message}"]
        if self.context.uid:
            parts.append(f"(uid={self.context.uid})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }


# =============================================================================
# Ledger Errors
# =============================================================================


class LedgerError(QuotaLedgerError):
    """Base class for business-rule violations raised by the ledger."""

    code = ErrorCode.LEDGER_ERROR
    retryable = False
    http_status = 400


class ProfileNotFoundError(LedgerError):
    """The referenced uid has no profile. Only bootstrap creates profiles."""

    code = ErrorCode.PROFILE_NOT_FOUND
    http_status = 404

    def __init__(self, uid: str, **kwargs):
        kwargs.setdefault("context", ErrorContext(uid=uid))
        super().__init__(f"User profile {uid} not found", **kwargs)
        self.uid = uid


class QuotaExceededError(LedgerError):
    """Not enough remaining credits to place the hold."""

    code = ErrorCode.QUOTA_EXCEEDED
    http_status = 429

    def __init__(
        self,
        message: str = "You have reached your current allocation.",
        *,
        requested: int | None = None,
        remaining: int | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.requested = requested
        self.remaining = remaining


class InvalidArgumentError(LedgerError):
    """A caller-supplied value is out of range (e.g. non-positive amount)."""

    code = ErrorCode.INVALID_ARGUMENT
    http_status = 400


# =============================================================================
# Store Errors
# =============================================================================


class StoreError(QuotaLedgerError):
    """Base class for durable-store failures. Retryable by the end user."""

    code = ErrorCode.STORE_ERROR
    retryable = True
    http_status = 503


class TransactionConflictError(StoreError):
    """The store gave up after exhausting its transaction retry budget."""

    code = ErrorCode.TRANSACTION_CONFLICT

    def __init__(
        self,
        message: str = "Transaction aborted after repeated conflicts",
        *,
        attempts: int | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.attempts = attempts


def is_retryable(error: Exception) -> bool:
    """
    Check if an error is retryable.

    Args:
        error: Exception to check

    Returns:
        True if the error is retryable
    """
    if isinstance(error, QuotaLedgerError):
        return error.retryable

    import asyncio

    retryable_types = (
        asyncio.TimeoutError,
        ConnectionError,
        TimeoutError,
    )
    return isinstance(error, retryable_types)


__all__ = [
    "ErrorCode",
    "ErrorContext",
    "QuotaLedgerError",
    "LedgerError",
    "ProfileNotFoundError",
    "QuotaExceededError",
    "InvalidArgumentError",
    "StoreError",
    "TransactionConflictError",
    "is_retryable",
]
