"""
Unit Tests: Entity Model and EntityCache

Tests:
    - save: validation, presave, key assignment
    - retrieve: cache hit, miss with backfill, corrupt entries, bad ids
    - delete: cache and store both cleared
    - DateTime fields through the store and the cache
    - update capability
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import ClassVar

import pytest

from shardcache.core.errors import (
    ErrorCode,
    is_decode_error,
    is_mismatch_error,
    is_nil_error,
    is_not_found,
    is_validation_error,
)
from shardcache.core.types import DateTime, Key
from shardcache.entity import (
    Backfill,
    Entity,
    EntityCache,
    Model,
    Presaver,
    Updatable,
    apply_update,
    is_valid,
    read_id,
)
from shardcache.storage import codec


@dataclass
class Article(Entity):
    KIND: ClassVar[str] = "Article"

    title: str = ""
    body: str = ""
    tags: list = field(default_factory=list)
    published: DateTime = field(default_factory=DateTime)
    revision: int = 0

    def validation_errors(self) -> list[str]:
        errors = []
        if not self.title:
            errors.append("title is required")
        if len(self.body) > 5000:
            errors.append("body is too long")
        return errors

    def presave(self) -> None:
        self.revision += 1


@dataclass
class Note(Entity):
    KIND: ClassVar[str] = "Note"

    text: str = ""


@pytest.fixture
def entities(store, cache, metrics):
    return EntityCache(store, cache, metrics=metrics)


class TestModel:
    """Tests for the Entity mixin."""

    def test_protocols(self):
        """Test the structural capabilities of the sample records."""
        assert isinstance(Article(), Model)
        assert isinstance(Article(), Presaver)
        assert not isinstance(Note(), Presaver)
        assert isinstance(Note(), Updatable)

    def test_make_key_incomplete_by_default(self):
        """Test that a new record writes under an incomplete key of its kind."""
        key = Note().make_key()
        assert key.kind == "Note"
        assert key.is_incomplete

    def test_make_key_reuses_assigned_key(self):
        """Test that a keyed record writes back to the same key."""
        note = Note()
        note.set_key(Key("Note", id=7))
        assert note.make_key() == Key("Note", id=7)

    def test_to_dict_excludes_key(self):
        """Test that the key is not part of the payload."""
        note = Note(text="hi")
        note.set_key(Key("Note", id=7))
        assert note.to_dict() == {"text": "hi"}

    def test_datetime_encoding(self):
        """Test DateTime fields in the payload."""
        stamp = datetime(2024, 5, 1, 12, 30, 15, tzinfo=timezone.utc)
        assert Article(title="t").to_dict()["published"] == ""
        assert Article(title="t", published=DateTime(stamp)).to_dict()["published"] == \
            "2024-05-01T12:30:15+00:00"

    def test_load_dict_keeps_absent_fields(self):
        """Test that fields missing from the payload keep their value."""
        article = Article(title="old", body="kept")
        assert article.load_dict({"title": "new", "unknown": 1}).is_ok()
        assert article.title == "new"
        assert article.body == "kept"

    def test_load_dict_bad_timestamp(self):
        """Test that an unparseable timestamp fails without touching fields."""
        article = Article(title="old")
        result = article.load_dict({"title": "new", "published": "yesterday"})
        assert result.is_err()
        assert is_decode_error(result.error)
        assert article.title == "old"

    def test_is_valid_and_read_id(self):
        """Test the record helpers."""
        article = Article()
        assert not is_valid(article)
        assert read_id(article) == ""
        article.title = "ok"
        assert is_valid(article)
        article.set_key(Key("Article", id=3))
        assert read_id(article) == Key("Article", id=3).encode()


class TestUpdate:
    """Tests for the update capability."""

    def test_update_same_type(self):
        """Test copying fields between records of one type."""
        target, source = Note(text="a"), Note(text="b")
        assert apply_update(target, source).is_ok()
        assert target.text == "b"

    def test_update_copies_containers(self):
        """Test that updated lists are not shared with the source."""
        target, source = Article(), Article(tags=["x"])
        target.update(source)
        source.tags.append("y")
        assert target.tags == ["x"]

    def test_update_mismatch(self):
        """Test that a different concrete type is refused."""
        result = apply_update(Note(), Article(title="t"))
        assert result.is_err()
        assert is_mismatch_error(result.error)
        assert result.error.message.startswith("Mismatched values: ")

    def test_target_without_update(self):
        """Test a target lacking the capability."""
        result = apply_update(object(), Note())
        assert is_mismatch_error(result.error)


class TestSave:
    """Tests for save() and save_and_cache()."""

    async def test_save_assigns_key(self, entities, store):
        """Test that a new record gets an allocated id."""
        article = Article(title="Hello")
        key = (await entities.save(article)).unwrap()
        assert key.kind == "Article"
        assert key.id > 0
        assert article.key() == key
        assert (await store.get(key)).unwrap()["title"] == "Hello"

    async def test_save_overwrites_existing(self, entities, store):
        """Test that saving a keyed record updates it in place."""
        article = Article(title="v1")
        key = (await entities.save(article)).unwrap()
        article.title = "v2"
        assert (await entities.save(article)).unwrap() == key
        assert (await store.get(key)).unwrap()["title"] == "v2"
        assert await store.count("Article") == 1

    async def test_validation_errors_joined(self, entities, store):
        """Test that every violation is reported and nothing is written."""
        result = await entities.save(Article(body="x" * 6000))
        assert result.is_err()
        assert is_validation_error(result.error)
        assert result.error.message == "validation error: title is required, body is too long"
        assert await store.count() == 0

    async def test_presave_runs_before_put(self, entities, store):
        """Test that presave changes are persisted."""
        article = Article(title="t")
        key = (await entities.save(article)).unwrap()
        assert article.revision == 1
        assert (await store.get(key)).unwrap()["revision"] == 1

    async def test_presave_skipped_when_invalid(self, entities):
        """Test that presave does not run for an invalid record."""
        article = Article()
        await entities.save(article)
        assert article.revision == 0

    async def test_save_none(self, entities):
        """Test that a missing record is a nil error."""
        result = await entities.save(None)
        assert is_nil_error(result.error)

    async def test_save_without_store(self, cache):
        """Test that a missing store is a nil error."""
        result = await EntityCache(None, cache).save(Note(text="x"))
        assert is_nil_error(result.error)
        assert result.error.message == "Nil error (store)"

    async def test_save_and_cache_populates_cache(self, entities, cache):
        """Test that the snapshot is cached under the encoded key."""
        article = Article(title="cached")
        key = (await entities.save_and_cache(article)).unwrap()
        raw = (await cache.get(key.encode())).unwrap()
        assert codec.decode(raw).unwrap()["title"] == "cached"

    async def test_save_and_cache_with_broken_cache(self, store, broken_cache):
        """Test that a dead cache does not fail the save."""
        entities = EntityCache(store, broken_cache)
        key = (await entities.save_and_cache(Note(text="x"))).unwrap()
        assert (await store.get(key)).is_ok()

    async def test_large_snapshot_compressed(self, store, cache):
        """Test that big records are cached compressed."""
        entities = EntityCache(store, cache, compression_threshold=64)
        key = (await entities.save_and_cache(Article(title="t", body="lorem " * 200))).unwrap()
        raw = (await cache.get(key.encode())).unwrap()
        assert codec.is_compressed(raw)


class TestRetrieve:
    """Tests for the cache-aside read path."""

    async def test_cache_hit_survives_store_delete(self, entities, store):
        """Test that a cached snapshot is served without the store."""
        article = Article(title="Hello", tags=["a", "b"])
        key = (await entities.save_and_cache(article)).unwrap()
        await store.delete(key)

        loaded = (await entities.retrieve(key.encode(), Article())).unwrap()
        assert loaded.title == "Hello"
        assert loaded.tags == ["a", "b"]
        assert loaded.key() == key

    async def test_miss_reads_store_and_backfills(self, entities, cache, metrics):
        """Test the miss path."""
        note = Note(text="from store")
        key = (await entities.save(note)).unwrap()
        assert (await cache.get(key.encode())).unwrap() is None

        loaded = (await entities.retrieve(key.encode(), Note())).unwrap()
        assert loaded.text == "from store"
        assert loaded.key() == key
        assert (await cache.get(key.encode())).unwrap() is not None
        assert metrics.cache_lookups.get(component="entity", outcome="miss") == 1

    async def test_retrieve_by_key(self, entities):
        """Test retrieval with a Key instead of an encoded id."""
        key = (await entities.save_and_cache(Note(text="k"))).unwrap()
        assert (await entities.retrieve_by_key(key, Note())).unwrap().text == "k"

    async def test_add_backfill(self, entities, cache):
        """Test that the add backfill fills an empty cache entry."""
        key = (await entities.save(Note(text="added"))).unwrap()
        await entities.retrieve(key.encode(), Note(), backfill=Backfill.ADD)
        assert (await cache.get(key.encode())).unwrap() is not None

    async def test_not_found(self, entities):
        """Test that a missing record reports not found."""
        result = await entities.retrieve(Key("Note", id=999).encode(), Note())
        assert result.is_err()
        assert is_not_found(result.error)

    async def test_malformed_id(self, entities):
        """Test that an id that is not an encoded key is rejected."""
        result = await entities.retrieve("definitely not a key", Note())
        assert result.error.code == ErrorCode.INVALID_VALUE

    async def test_corrupt_cache_entry_falls_back(self, entities, cache, metrics):
        """Test that an undecodable cache entry is replaced from the store."""
        key = (await entities.save(Note(text="good"))).unwrap()
        await cache.set(key.encode(), b"\x01\x00{not json")

        loaded = (await entities.retrieve(key.encode(), Note())).unwrap()
        assert loaded.text == "good"
        assert metrics.cache_lookups.get(component="entity", outcome="corrupt") == 1
        assert codec.decode((await cache.get(key.encode())).unwrap()).is_ok()

    async def test_broken_cache_reads_store(self, store, broken_cache):
        """Test that reads work with a dead cache."""
        entities = EntityCache(store, broken_cache)
        key = (await entities.save(Note(text="x"))).unwrap()
        assert (await entities.retrieve(key.encode(), Note())).unwrap().text == "x"

    async def test_load_by_id_skips_cache(self, entities, cache):
        """Test that direct loads neither read nor fill the cache."""
        key = (await entities.save(Note(text="direct"))).unwrap()
        assert (await entities.load_by_id(key.encode(), Note())).unwrap().text == "direct"
        assert len(cache) == 0

    async def test_zero_datetime_round_trip(self, entities, store):
        """Test that a zero timestamp stays zero through cache and store."""
        key = (await entities.save_and_cache(Article(title="t"))).unwrap()

        cached = (await entities.retrieve(key.encode(), Article())).unwrap()
        assert cached.published.is_zero

        stored = (await entities.load_by_key(key, Article())).unwrap()
        assert stored.published.is_zero

    async def test_datetime_round_trip(self, entities):
        """Test that a timestamp survives to the second."""
        stamp = datetime(2024, 5, 1, 12, 30, 15, 999, tzinfo=timezone.utc)
        key = (await entities.save_and_cache(Article(title="t", published=DateTime(stamp)))).unwrap()
        loaded = (await entities.retrieve(key.encode(), Article())).unwrap()
        assert loaded.published.equal(DateTime(stamp))


class TestDelete:
    """Tests for delete_by_key() and delete_by_id()."""

    async def test_delete_clears_store_and_cache(self, entities, cache):
        """Test that a deleted record is gone from both tiers."""
        key = (await entities.save_and_cache(Note(text="bye"))).unwrap()
        assert (await entities.delete_by_key(key)).is_ok()

        assert (await cache.get(key.encode())).unwrap() is None
        assert is_not_found((await entities.retrieve(key.encode(), Note())).error)

    async def test_delete_by_id(self, entities):
        """Test deletion by encoded id."""
        key = (await entities.save(Note(text="bye"))).unwrap()
        assert (await entities.delete_by_id(key.encode())).is_ok()
        assert is_not_found((await entities.load_by_key(key, Note())).error)

    async def test_delete_missing_succeeds(self, entities):
        """Test that deleting an absent record is not an error."""
        assert (await entities.delete_by_key(Key("Note", id=42))).is_ok()

    async def test_delete_malformed_id(self, entities):
        """Test that a malformed id is rejected."""
        result = await entities.delete_by_id("%%%")
        assert result.error.code == ErrorCode.INVALID_VALUE


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
