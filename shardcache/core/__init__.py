"""
Core module: Type definitions and error hierarchy.

This module provides the foundational abstractions for shardcache:
- Result/Either monad for exception-free control flow
- Key and DateTime value types shared by every layer
- Error hierarchy with pattern matching support

Configuration lives in `shardcache.core.config`.
"""

from shardcache.core.types import (
    Result,
    Ok,
    Err,
    Key,
    DateTime,
)
from shardcache.core.errors import (
    ErrorCode,
    ShardCacheError,
    NotFoundError,
    ValidationError,
    MismatchError,
    NilError,
    DecodeError,
    StorageError,
    CacheError,
    is_not_found,
    is_validation_error,
    is_mismatch_error,
    is_nil_error,
    is_decode_error,
    is_transport_error,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Key",
    "DateTime",
    "ErrorCode",
    "ShardCacheError",
    "NotFoundError",
    "ValidationError",
    "MismatchError",
    "NilError",
    "DecodeError",
    "StorageError",
    "CacheError",
    "is_not_found",
    "is_validation_error",
    "is_mismatch_error",
    "is_nil_error",
    "is_decode_error",
    "is_transport_error",
]
