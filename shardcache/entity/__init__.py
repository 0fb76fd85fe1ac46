"""
Entity module: record contract and cache-aside persistence.
"""

from shardcache.entity.cache import Backfill, EntityCache, is_valid, read_id
from shardcache.entity.model import (
    Entity,
    Model,
    Presaver,
    Updatable,
    apply_update,
)

__all__ = [
    "Backfill",
    "EntityCache",
    "Entity",
    "Model",
    "Presaver",
    "Updatable",
    "apply_update",
    "is_valid",
    "read_id",
]
