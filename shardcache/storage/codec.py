"""
Cache Payload Codec: JSON with Optional LZ4 Compression

Wire format:
    [version: u8][flags: u8][body]

    flags bit 0 set: body is an LZ4 frame wrapping the JSON text
    flags bit 0 clear: body is UTF-8 JSON

Bodies above COMPRESSION_THRESHOLD_BYTES are compressed on encode.
"""

from __future__ import annotations

import json
import struct
from typing import Any

import lz4.frame

from shardcache.core import constants as C
from shardcache.core.errors import DecodeError
from shardcache.core.types import Err, Ok, Result

FORMAT_VERSION: int = 0x01
FLAG_COMPRESSED: int = 0x01

_HEADER = struct.Struct(">BB")


def encode(
    record: dict[str, Any],
    threshold: int = C.COMPRESSION_THRESHOLD_BYTES,
) -> bytes:
    """
    Serialize a record for the cache.

    Raises:
        TypeError, ValueError: record is not JSON-serializable
    """
    body = json.dumps(record, separators=(",", ":"), sort_keys=True).encode("utf-8")
    flags = 0x00
    if len(body) > threshold:
        body = lz4.frame.compress(body)
        flags |= FLAG_COMPRESSED
    return _HEADER.pack(FORMAT_VERSION, flags) + body


def decode(data: bytes, origin: str = "cache") -> Result[dict[str, Any], DecodeError]:
    """
    Parse bytes produced by `encode`.

    Returns:
        Ok(record): Well-formed payload holding a JSON object
        Err(DecodeError): Truncated, unknown version, bad frame or bad JSON
    """
    if len(data) < _HEADER.size:
        return Err(DecodeError.unparseable(origin, ValueError("payload too short")))

    version, flags = _HEADER.unpack_from(data)
    if version != FORMAT_VERSION:
        return Err(DecodeError.unparseable(
            origin, ValueError(f"unknown payload version {version}")
        ))

    body = data[_HEADER.size:]
    try:
        if flags & FLAG_COMPRESSED:
            body = lz4.frame.decompress(body)
        record = json.loads(body.decode("utf-8"))
    except (RuntimeError, ValueError) as e:
        # lz4 reports corrupt frames as RuntimeError
        return Err(DecodeError.unparseable(origin, e))

    if not isinstance(record, dict):
        return Err(DecodeError.unparseable(
            origin, ValueError(f"expected an object, got {type(record).__name__}")
        ))
    return Ok(record)


def is_compressed(data: bytes) -> bool:
    return len(data) >= _HEADER.size and bool(data[1] & FLAG_COMPRESSED)
