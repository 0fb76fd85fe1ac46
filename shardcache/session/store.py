"""
Session Store: Expiring Tokens Backed by EntityCache

A session is a stored record whose encoded key is the bearer token:

    issue     -> Session{name, value=json(payload), expiration=now+duration}
                 -> save_and_cache -> token
    validate  -> retrieve(token, backfill=ADD) -> expiration in the future?

Validation reads the cache first and repopulates it with add(), so a
concurrent writer's fresher entry is never overwritten. Every failure on
the validation path reads as "not valid".

Expired sessions stay in the store.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, ClassVar, Optional

from shardcache.core import constants as C
from shardcache.core.config import SessionSettings
from shardcache.core.errors import DecodeError, ShardCacheError
from shardcache.core.types import DateTime, Err, Key, Ok, Result, as_utc
from shardcache.entity.cache import Backfill, EntityCache, read_id
from shardcache.entity.model import Entity

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session(Entity):
    """Stored session record."""

    KIND: ClassVar[str] = C.SESSION_KIND

    name: str = ""
    value: str = ""
    expiration: DateTime = field(default_factory=DateTime)

    def valid(self, now: Optional[datetime] = None) -> bool:
        """False for an unset expiration or one not after `now` (naive means UTC)."""
        if self.expiration.is_zero:
            return False
        return self.expiration.value > as_utc(now or _utcnow())

    def payload(self) -> Result[Any, DecodeError]:
        """Decode the JSON payload; an empty value decodes to None."""
        if not self.value:
            return Ok(None)
        try:
            return Ok(json.loads(self.value))
        except ValueError as e:
            return Err(DecodeError.unparseable("session payload", e))


@dataclass(frozen=True)
class SessionCookie:
    """Cookie fields for handing a session token to a browser."""

    name: str
    value: str
    expires: datetime


class SessionStore:
    """
    Issue and check session tokens.

    Usage:
        sessions = SessionStore(EntityCache(store, cache))
        token = (await sessions.issue("alice", {"role": "admin"}, 3600)).unwrap()
        assert await sessions.validate(token)
    """

    __slots__ = ("_entities", "_settings", "_clock")

    def __init__(
        self,
        entities: EntityCache,
        settings: Optional[SessionSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Args:
            entities: Cache-aside persistence for session records
            settings: Record kind for new sessions
            clock: Source of "now" for expirations and validity checks
        """
        self._entities = entities
        self._settings = settings or SessionSettings()
        self._clock = clock

    async def issue(
        self,
        name: str,
        payload: Any,
        duration_seconds: float,
    ) -> Result[str, ShardCacheError]:
        """
        Create a session expiring `duration_seconds` from now.

        A payload that does not serialize to JSON is dropped and the
        session is issued with an empty value.

        Returns:
            Ok(token): encoded key of the stored session
            Err(StorageError): the store put failed
        """
        session = self._new_session(name, payload, duration_seconds)
        saved = await self._entities.save_and_cache(session)
        if saved.is_err():
            return Err(saved.error)

        logger.debug(
            "Session issued",
            extra={"session": name, "expires": session.expiration.to_json()},
        )
        return Ok(read_id(session))

    async def issue_cookie(
        self,
        name: str,
        payload: Any,
        duration_seconds: float,
    ) -> Result[SessionCookie, ShardCacheError]:
        """issue(), packaged as cookie fields."""
        session = self._new_session(name, payload, duration_seconds)
        saved = await self._entities.save_and_cache(session)
        if saved.is_err():
            return Err(saved.error)
        return Ok(SessionCookie(
            name=name,
            value=read_id(session),
            expires=session.expiration.value,
        ))

    async def validate(self, token: str) -> bool:
        """True only for a known, unexpired session. Never fails."""
        loaded = await self.load(token)
        if loaded.is_err():
            logger.debug(
                "Session rejected",
                extra={"error_code": loaded.error.code.name, "error": loaded.error.message},
            )
            return False
        return loaded.value.valid(self._clock())

    async def load(self, token: str) -> Result[Session, ShardCacheError]:
        """
        The stored session, expired or not.

        Returns:
            Ok(session)
            Err(ValidationError): token is not an encoded key
            Err(NotFoundError | StorageError): store outcome
        """
        return await self._entities.retrieve(token, Session(), backfill=Backfill.ADD)

    def _new_session(self, name: str, payload: Any, duration_seconds: float) -> Session:
        session = Session(
            name=name,
            expiration=DateTime(self._clock() + timedelta(seconds=duration_seconds)),
        )
        if payload is not None:
            try:
                session.value = json.dumps(payload)
            except (TypeError, ValueError) as e:
                logger.debug(
                    "Session payload not serializable",
                    extra={"session": name, "error": str(e)},
                )
        session.set_key(Key.incomplete(self._settings.kind))
        return session
