"""
Core Type Definitions for shardcache

Implements the Result/Either monad used for control flow across the
store, cache, counter and session layers, plus the two value types every
layer shares:

- Key: kind-scoped store key with an opaque, URL-safe string encoding
- DateTime: timestamp wrapper whose zero value survives a JSON round-trip

Design Principles:
- Fallible operations return Result instead of raising
- Absence is explicit (Optional or Err), never a sentinel value
- Value types are immutable and hashable
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import (
    Any,
    Callable,
    Generic,
    Literal,
    Optional,
    TypeVar,
    Union,
)

from shardcache.core.constants import MAX_ENCODED_KEY_LENGTH

# =============================================================================
# TYPE VARIABLES FOR GENERIC CONTAINERS
# =============================================================================
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type
U = TypeVar("U")  # Transform result type


# =============================================================================
# RESULT MONAD
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result monad.

    Immutable, hashable container for successful computation results.
    """

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """Extract value. Safe to call after is_ok() check."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return value, ignoring default."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply transformation to success value."""
        return Ok(fn(self.value))

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """Monadic bind for chaining fallible operations."""
        return fn(self.value)

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result monad.

    Carries the error value unchanged through map/flat_map chains.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Attempting to unwrap an error is a programming error.

        Raises:
            RuntimeError: Always, with error context
        """
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Return default value on error."""
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        return self

    def flat_map(self, fn: Callable[[Any], Result[U, E]]) -> Err[E]:
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Union type for pattern matching
Result = Union[Ok[T], Err[E]]


# =============================================================================
# STORE KEY
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Key:
    """
    Store key scoped to a record kind.

    A key identifies its record either by string `name` or by integer `id`.
    A key with neither is incomplete: the store allocates an id on put and
    returns the completed key.

    Encoded form:
        base64url(json([kind, name, id])) without padding

    Example:
        >>> key = Key.named("CounterConfig", "hits")
        >>> Key.decode(key.encode()).unwrap() == key
        True
    """

    kind: str
    name: str = ""
    id: int = 0

    def __post_init__(self) -> None:
        if not self.kind:
            raise ValueError("kind must not be empty")
        if self.name and self.id:
            raise ValueError("key cannot carry both name and id")
        if self.id < 0:
            raise ValueError(f"id must be >= 0, got {self.id}")

    @classmethod
    def named(cls, kind: str, name: str) -> Key:
        return cls(kind=kind, name=name)

    @classmethod
    def incomplete(cls, kind: str) -> Key:
        return cls(kind=kind)

    @property
    def is_incomplete(self) -> bool:
        """True when the store still has to allocate an id."""
        return not self.name and self.id == 0

    def with_id(self, new_id: int) -> Key:
        """Complete an incomplete key with an allocated id."""
        return Key(kind=self.kind, id=new_id)

    def encode(self) -> str:
        """Encode to an opaque URL-safe string."""
        raw = json.dumps([self.kind, self.name, self.id], separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, encoded: str) -> Result[Key, str]:
        """
        Decode an opaque key string.

        Returns:
            Ok[Key]: Valid key
            Err[str]: Reason the string is not a key
        """
        if not encoded:
            return Err("empty key string")
        if len(encoded) > MAX_ENCODED_KEY_LENGTH:
            return Err(f"key string longer than {MAX_ENCODED_KEY_LENGTH} characters")
        try:
            padded = encoded + "=" * (-len(encoded) % 4)
            raw = base64.urlsafe_b64decode(padded.encode("ascii"))
            kind, name, key_id = json.loads(raw.decode("utf-8"))
            if not isinstance(kind, str) or not isinstance(name, str) \
                    or not isinstance(key_id, int):
                return Err(f"malformed key components in {encoded!r}")
            key = cls(kind=kind, name=name, id=key_id)
        except (ValueError, TypeError, UnicodeError, RecursionError) as e:
            return Err(f"cannot decode key {encoded!r}: {e}")
        if key.is_incomplete:
            return Err(f"key {encoded!r} is incomplete")
        return Ok(key)

    def __str__(self) -> str:
        ident = self.name if self.name else str(self.id)
        return f"{self.kind}({ident})"


# =============================================================================
# DATETIME WITH ZERO VALUE
# =============================================================================
def as_utc(moment: datetime) -> datetime:
    """Read a naive datetime as UTC; aware ones pass through."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


@dataclass(frozen=True, slots=True)
class DateTime:
    """
    Timestamp wrapper for JSON payloads.

    Handles time to the second. The zero value (`value is None`) encodes as
    an empty string and decodes back to the zero value; other values encode
    as RFC 3339, e.g. "2006-01-02T15:04:05+07:00".
    """

    value: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.value is not None and self.value.tzinfo is None:
            object.__setattr__(self, "value", as_utc(self.value))

    @classmethod
    def now(cls) -> DateTime:
        return cls(datetime.now(timezone.utc))

    @classmethod
    def zero(cls) -> DateTime:
        return cls()

    @classmethod
    def parse(cls, stamp: str) -> Result[DateTime, str]:
        """Parse an RFC 3339 string; "" yields the zero value."""
        if stamp == "":
            return Ok(cls())
        try:
            parsed = datetime.fromisoformat(stamp.replace("Z", "+00:00"))
        except ValueError as e:
            return Err(f"invalid RFC 3339 timestamp {stamp!r}: {e}")
        return Ok(cls(parsed))

    @property
    def is_zero(self) -> bool:
        return self.value is None

    def to_json(self) -> str:
        if self.value is None:
            return ""
        return self.value.isoformat(timespec="seconds")

    def add(self, delta: timedelta) -> DateTime:
        if self.value is None:
            return self
        return DateTime(self.value + delta)

    def before(self, other: datetime) -> bool:
        return self.value is not None and self.value < as_utc(other)

    def equal(self, other: DateTime) -> bool:
        """Compare to the second, across time zones."""
        if self.value is None or other.value is None:
            return self.value is None and other.value is None
        return (
            self.value.replace(microsecond=0) == other.value.replace(microsecond=0)
        )

    def __str__(self) -> str:
        return self.to_json()
