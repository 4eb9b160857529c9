"""
repositories/ - Data Access Layer
==================================
Generic repositories mapping entity dataclasses to tables.
BaseRepository talks to the database on every call, CacheRepository
serves reads from an in-memory snapshot, and the factories hand out
one repository per entity type.
"""

from repositories.base_repo import BaseRepository, CommandType
from repositories.cache_repo import CacheRepository, CacheState
from repositories.factory import CacheRepositoryFactory, RepositoryFactory
from repositories.metadata import EntityMetadata, key_field, resolve_metadata

__all__ = [
    "BaseRepository",
    "CacheRepository",
    "CacheRepositoryFactory",
    "CacheState",
    "CommandType",
    "EntityMetadata",
    "RepositoryFactory",
    "key_field",
    "resolve_metadata",
]
