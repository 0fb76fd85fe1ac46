"""
Error Hierarchy for shardcache

Design Principles:
- Errors travel inside Err, they are not raised for control flow
- Every error carries a code for programmatic handling
- Cache failures never surface; store failures always do

Each error type includes:
- Unique error code for programmatic handling
- Human-readable message for logging
- Optional cause for root cause analysis
- Timestamp for correlation with logs

Usage:
    result = await entities.retrieve(token, record)
    match result:
        case Ok(record):
            use(record)
        case Err(NotFoundError()):
            respond_404()
        case Err(error):
            log_and_fail(error)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Sequence
from uuid import uuid4


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by category:
    - 1xxx: Lookup errors
    - 2xxx: Validation errors
    - 3xxx: Store transport errors
    - 4xxx: Cache transport errors
    - 9xxx: Internal errors
    """

    # Lookup (1xxx)
    NOT_FOUND = 1001

    # Validation (2xxx)
    VALIDATION_FAILED = 2001
    INVALID_VALUE = 2002
    MISSING_VALUE = 2003
    DUPLICATE_VALUE = 2004
    INSUFFICIENT_VALUE = 2005
    TYPE_MISMATCH = 2006
    NIL_VALUE = 2007
    DECODE_FAILED = 2008

    # Store transport (3xxx)
    STORAGE_CONNECTION_FAILED = 3001
    STORAGE_TIMEOUT = 3002
    STORAGE_SERIALIZATION_CONFLICT = 3003
    STORAGE_TRANSACTION_ABORTED = 3004
    STORAGE_OPERATION_FAILED = 3005

    # Cache transport (4xxx)
    CACHE_UNAVAILABLE = 4001
    CACHE_TIMEOUT = 4002
    CACHE_OPERATION_FAILED = 4003

    # Internal (9xxx)
    INTERNAL_CONFIGURATION_ERROR = 9001


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class ShardCacheError(Exception):
    """
    Base class for all shardcache errors.

    Provides common infrastructure for error handling:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cause: Optional[Exception] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """Transport failures are worth another attempt; the rest are not."""
        return self.code in _RETRYABLE_CODES

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging."""
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


_RETRYABLE_CODES = frozenset({
    ErrorCode.STORAGE_CONNECTION_FAILED,
    ErrorCode.STORAGE_TIMEOUT,
    ErrorCode.STORAGE_SERIALIZATION_CONFLICT,
    ErrorCode.STORAGE_TRANSACTION_ABORTED,
    ErrorCode.CACHE_UNAVAILABLE,
    ErrorCode.CACHE_TIMEOUT,
})


def _with_detail(head: str, name: str, msg: str) -> str:
    """Join "<head> for <name> - <msg>", dropping empty parts."""
    m = f"{head} for {name}" if name else head
    if msg:
        m += f" - {msg}"
    return m


# =============================================================================
# LOOKUP ERRORS
# =============================================================================
@dataclass
class NotFoundError(ShardCacheError):
    """
    A store lookup found no record.

    Message formats:
        Entity not found
        'Kind' entity not found: <cause>
    """

    @classmethod
    def entity(
        cls,
        kind: str = "",
        key: str = "",
        cause: Optional[Exception] = None,
    ) -> NotFoundError:
        m = f"'{kind}' entity not found" if kind else "Entity not found"
        if cause is not None:
            m += f": {cause}"
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=m,
            cause=cause,
            context={"kind": kind, "key": key},
        )


# =============================================================================
# VALIDATION ERRORS
# =============================================================================
@dataclass
class ValidationError(ShardCacheError):
    """
    A record or argument failed its rules.

    Raised before any I/O takes place.
    """

    @classmethod
    def invalid_record(cls, violations: Sequence[str]) -> ValidationError:
        """Record failed its own rule set; all violations in one message."""
        joined = ", ".join(violations)
        return cls(
            code=ErrorCode.VALIDATION_FAILED,
            message=f"validation error: {joined}",
            context={"violations": list(violations)},
        )

    @classmethod
    def invalid(cls, msg: str) -> ValidationError:
        return cls(code=ErrorCode.INVALID_VALUE, message=f"Invalid value: {msg}")

    @classmethod
    def missing(cls, msg: str) -> ValidationError:
        return cls(code=ErrorCode.MISSING_VALUE, message=f"Missing value: {msg}")

    @classmethod
    def duplicate(cls, name: str = "", msg: str = "") -> ValidationError:
        return cls(
            code=ErrorCode.DUPLICATE_VALUE,
            message=_with_detail("Duplicate value", name, msg),
            context={"name": name},
        )

    @classmethod
    def insufficient(cls, name: str = "", msg: str = "") -> ValidationError:
        return cls(
            code=ErrorCode.INSUFFICIENT_VALUE,
            message=_with_detail("Insufficient value", name, msg),
            context={"name": name},
        )


@dataclass
class MismatchError(ShardCacheError):
    """A record of an incompatible concrete type was supplied."""

    @classmethod
    def type_mismatch(cls, msg: str = "") -> MismatchError:
        m = "Mismatched values"
        if msg:
            m += f": {msg}"
        return cls(code=ErrorCode.TYPE_MISMATCH, message=m)


@dataclass
class NilError(ShardCacheError):
    """A required collaborator or argument is absent."""

    @classmethod
    def missing_collaborator(
        cls,
        msg: str = "",
        cause: Optional[Exception] = None,
    ) -> NilError:
        m = "Nil error"
        if msg:
            m += f" ({msg})"
        if cause is not None:
            m += f" - {cause}"
        return cls(code=ErrorCode.NIL_VALUE, message=m, cause=cause)


@dataclass
class DecodeError(ShardCacheError):
    """A serialized payload could not be parsed."""

    @classmethod
    def unparseable(
        cls,
        origin: str = "",
        cause: Optional[Exception] = None,
    ) -> DecodeError:
        m = "Unable to parse JSON"
        if origin:
            m += f" ({origin})"
        if cause is not None:
            m += f": {cause}"
        return cls(
            code=ErrorCode.DECODE_FAILED,
            message=m,
            cause=cause,
            context={"origin": origin},
        )


# =============================================================================
# TRANSPORT ERRORS
# =============================================================================
@dataclass
class StorageError(ShardCacheError):
    """
    Opaque failures of the durable store.

    Passed through to callers unchanged.
    """

    @classmethod
    def connection_failed(
        cls,
        host: str,
        port: int,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        return cls(
            code=ErrorCode.STORAGE_CONNECTION_FAILED,
            message=f"Failed to connect to store at {host}:{port}",
            cause=cause,
            context={"host": host, "port": port},
        )

    @classmethod
    def timeout(
        cls,
        operation: str,
        duration_ms: int,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        return cls(
            code=ErrorCode.STORAGE_TIMEOUT,
            message=f"Operation '{operation}' timed out after {duration_ms}ms",
            cause=cause,
            context={"operation": operation, "duration_ms": duration_ms},
        )

    @classmethod
    def serialization_conflict(
        cls,
        transaction_id: str,
        key: str = "",
        cause: Optional[Exception] = None,
    ) -> StorageError:
        """Concurrent transaction modified a record this one read."""
        return cls(
            code=ErrorCode.STORAGE_SERIALIZATION_CONFLICT,
            message=f"Serialization conflict in transaction {transaction_id}",
            cause=cause,
            context={"transaction_id": transaction_id, "key": key},
        )

    @classmethod
    def transaction_aborted(
        cls,
        attempts: int,
        last_error: str,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        return cls(
            code=ErrorCode.STORAGE_TRANSACTION_ABORTED,
            message=f"Transaction aborted after {attempts} attempts: {last_error}",
            cause=cause,
            context={"attempts": attempts, "last_error": last_error},
        )

    @classmethod
    def operation_failed(
        cls,
        operation: str,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        m = f"Store operation '{operation}' failed"
        if cause is not None:
            m += f": {cause}"
        return cls(
            code=ErrorCode.STORAGE_OPERATION_FAILED,
            message=m,
            cause=cause,
            context={"operation": operation},
        )


@dataclass
class CacheError(ShardCacheError):
    """Failures of the best-effort cache. Never surfaced by the core."""

    @classmethod
    def unavailable(cls, cause: Optional[Exception] = None) -> CacheError:
        m = "Cache unavailable"
        if cause is not None:
            m += f": {cause}"
        return cls(code=ErrorCode.CACHE_UNAVAILABLE, message=m, cause=cause)

    @classmethod
    def timeout(cls, operation: str, cause: Optional[Exception] = None) -> CacheError:
        return cls(
            code=ErrorCode.CACHE_TIMEOUT,
            message=f"Cache operation '{operation}' timed out",
            cause=cause,
            context={"operation": operation},
        )

    @classmethod
    def operation_failed(
        cls,
        operation: str,
        cause: Optional[Exception] = None,
    ) -> CacheError:
        m = f"Cache operation '{operation}' failed"
        if cause is not None:
            m += f": {cause}"
        return cls(
            code=ErrorCode.CACHE_OPERATION_FAILED,
            message=m,
            cause=cause,
            context={"operation": operation},
        )


# =============================================================================
# PREDICATES
# =============================================================================
def is_not_found(error: object) -> bool:
    return isinstance(error, NotFoundError)


def is_validation_error(error: object) -> bool:
    return isinstance(error, ValidationError)


def is_mismatch_error(error: object) -> bool:
    return isinstance(error, MismatchError)


def is_nil_error(error: object) -> bool:
    return isinstance(error, NilError)


def is_decode_error(error: object) -> bool:
    return isinstance(error, DecodeError)


def is_transport_error(error: object) -> bool:
    return isinstance(error, (StorageError, CacheError))
