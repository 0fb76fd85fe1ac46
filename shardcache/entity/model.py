"""
Entity Model: The Contract a Record Offers to EntityCache

A record type opts in by satisfying `Model`:

    key() / set_key(key)        identity assigned by the store
    make_key()                  key to write under (incomplete for new ids)
    validation_errors()         rule violations, empty when valid
    to_dict() / load_dict(d)    JSON-compatible field mapping

Two optional capabilities are detected at runtime:

    Presaver.presave()          hook run after validation, before the put
    Updatable.update(other)     copy fields from a record of the same type

`Entity` is a dataclass mixin implementing all of it from the dataclass
fields. DateTime fields round-trip through their JSON form, so a zero
timestamp stays zero.
"""

from __future__ import annotations

import copy
import dataclasses
from typing import Any, ClassVar, Optional, Protocol, runtime_checkable

from shardcache.core.errors import DecodeError, MismatchError, ShardCacheError
from shardcache.core.types import DateTime, Err, Key, Ok, Result


# =============================================================================
# PROTOCOLS
# =============================================================================
@runtime_checkable
class Model(Protocol):
    """Record managed by EntityCache."""

    def key(self) -> Optional[Key]:
        ...

    def make_key(self) -> Key:
        ...

    def set_key(self, key: Key) -> None:
        ...

    def validation_errors(self) -> list[str]:
        ...

    def to_dict(self) -> dict[str, Any]:
        ...

    def load_dict(self, data: dict[str, Any]) -> Result[None, DecodeError]:
        ...


@runtime_checkable
class Presaver(Protocol):
    """Optional hook called by save() once validation passed."""

    def presave(self) -> None:
        ...


@runtime_checkable
class Updatable(Protocol):
    """Optional capability: take field values from another record."""

    def update(self, other: object) -> Result[None, MismatchError]:
        ...


def apply_update(target: object, source: object) -> Result[None, ShardCacheError]:
    """
    Copy `source` into `target` when `target` supports updates.

    Returns:
        Ok(None): target updated
        Err(MismatchError): target is not Updatable, or the types differ
    """
    if not isinstance(target, Updatable):
        return Err(MismatchError.type_mismatch(
            f"{type(target).__name__} does not support update"
        ))
    return target.update(source)


# =============================================================================
# DATACLASS MIXIN
# =============================================================================
class Entity:
    """
    Model implementation for dataclass records.

    Subclasses are dataclasses that set KIND; the store key is held outside
    the dataclass fields so it never lands in the payload.

    Example:
        @dataclass
        class Article(Entity):
            KIND: ClassVar[str] = "Article"
            title: str = ""
            published: DateTime = field(default_factory=DateTime)

            def validation_errors(self) -> list[str]:
                return [] if self.title else ["title is required"]
    """

    KIND: ClassVar[str] = ""

    _key: Optional[Key] = None

    def key(self) -> Optional[Key]:
        return self._key

    def set_key(self, key: Key) -> None:
        self._key = key

    def make_key(self) -> Key:
        """The current key, or a fresh incomplete key of KIND."""
        if self._key is not None:
            return self._key
        return Key.incomplete(self.KIND)

    def validation_errors(self) -> list[str]:
        return []

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            data[f.name] = value.to_json() if isinstance(value, DateTime) else copy.deepcopy(value)
        return data

    def load_dict(self, data: dict[str, Any]) -> Result[None, DecodeError]:
        """
        Overwrite fields present in `data`; absent fields keep their value.

        Unknown keys are ignored. A DateTime field that does not parse fails
        the whole load before any field is touched.
        """
        updates: dict[str, Any] = {}
        for f in dataclasses.fields(self):
            if f.name not in data:
                continue
            raw = data[f.name]
            if isinstance(getattr(self, f.name), DateTime):
                if not isinstance(raw, str):
                    return Err(DecodeError.unparseable(
                        f"{type(self).__name__}.{f.name}",
                        TypeError(f"expected timestamp string, got {type(raw).__name__}"),
                    ))
                parsed = DateTime.parse(raw)
                if parsed.is_err():
                    return Err(DecodeError.unparseable(
                        f"{type(self).__name__}.{f.name}", ValueError(parsed.error),
                    ))
                updates[f.name] = parsed.value
            else:
                updates[f.name] = copy.deepcopy(raw)

        for name, value in updates.items():
            setattr(self, name, value)
        return Ok(None)

    def update(self, other: object) -> Result[None, MismatchError]:
        """Copy every field from a record of exactly the same type."""
        if type(other) is not type(self):
            return Err(MismatchError.type_mismatch(
                f"cannot update {type(self).__name__} from {type(other).__name__}"
            ))
        for f in dataclasses.fields(self):
            value = getattr(other, f.name)
            setattr(self, f.name, value if isinstance(value, DateTime) else copy.deepcopy(value))
        return Ok(None)
