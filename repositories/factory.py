"""
repositories/factory.py
-----------------------
Hands out one repository per entity type.

Custom repositories are registered explicitly:

    factory.register(UserAccount, UserAccountRepository)

Every other entity type gets the generic repository of the factory's
flavour (BaseRepository or CacheRepository).
"""

import threading
from datetime import timedelta
from typing import Callable, Optional, Union

import config
from db.base import ConnectionProvider
from repositories.base_repo import BaseRepository
from repositories.cache_repo import CacheRepository
from utils.logger import get_logger

logger = get_logger(__name__)

RepositoryConstructor = Callable[[ConnectionProvider], BaseRepository]
Interval = Union[timedelta, float, int, None]


class RepositoryFactory:
    """Creates and memoizes BaseRepository instances, one per entity type."""

    def __init__(self, connection: ConnectionProvider, *, max_batch_size: Optional[int] = None):
        self.connection = connection
        self.max_batch_size = max_batch_size
        self._repositories: dict[type, BaseRepository] = {}
        self._constructors: dict[type, RepositoryConstructor] = {}
        self._lock = threading.RLock()

    def register(self, entity_type: type, constructor: Optional[RepositoryConstructor] = None):
        """
        Register a custom repository for `entity_type`.

        ``constructor`` is called with the connection provider; a repository
        class taking the connection as its only argument works as-is. When
        omitted, returns a class decorator.
        """
        if constructor is None:
            def decorator(cls):
                self.register(entity_type, cls)
                return cls
            return decorator

        with self._lock:
            self._constructors[entity_type] = constructor
        return constructor

    def create_repository(self, entity_type: type) -> BaseRepository:
        """
        Return the repository for `entity_type`, creating it on first use.

        A registered constructor is tried first. If there is none, or it
        fails, or it does not produce a repository for this entity type,
        the generic repository is built instead.
        """
        with self._lock:
            repository = self._repositories.get(entity_type)
            if repository is None:
                repository = self._build(entity_type)
                self._repositories[entity_type] = repository
            return repository

    def close(self) -> None:
        """Close every repository created so far and forget them."""
        with self._lock:
            repositories = list(self._repositories.values())
            self._repositories.clear()
        for repository in repositories:
            repository.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _build(self, entity_type: type) -> BaseRepository:
        constructor = self._constructors.get(entity_type)
        if constructor is not None:
            try:
                repository = constructor(self.connection)
            except Exception as e:
                logger.warning(
                    f"Custom repository for {entity_type.__name__} failed to build, "
                    f"using the default one: {e}"
                )
            else:
                if isinstance(repository, BaseRepository) and repository.entity_type is entity_type:
                    logger.debug(f"Using {type(repository).__name__} for {entity_type.__name__}")
                    return repository
                logger.warning(
                    f"{constructor!r} did not return a repository for {entity_type.__name__}, "
                    "using the default one"
                )
        return self._create_default(entity_type)

    def _create_default(self, entity_type: type) -> BaseRepository:
        return BaseRepository(self.connection, entity_type, max_batch_size=self.max_batch_size)


class CacheRepositoryFactory(RepositoryFactory):
    """
    Factory whose default repositories are CacheRepository instances.

    Refresh intervals can be set per entity type with add_refresh_interval();
    types without one use `default_refresh_interval` (caching disabled if
    that is None too).
    """

    def __init__(
        self,
        connection: ConnectionProvider,
        *,
        default_refresh_interval: Interval = config.CACHE_REFRESH_INTERVAL_SECONDS,
        periodic_refresh: bool = config.CACHE_PERIODIC_REFRESH,
        max_batch_size: Optional[int] = None,
    ):
        super().__init__(connection, max_batch_size=max_batch_size)
        self.default_refresh_interval = default_refresh_interval
        self.periodic_refresh = periodic_refresh
        self._refresh_intervals: dict[type, Interval] = {}

    def add_refresh_interval(self, entity_type: type, interval: Interval) -> bool:
        """
        Record the refresh interval used when the default CacheRepository
        for `entity_type` is created.

        Has no effect on a repository that already exists.

        Returns:
            True if recorded, False if the type already had an interval.
        """
        with self._lock:
            if entity_type in self._refresh_intervals:
                return False
            self._refresh_intervals[entity_type] = interval
            if entity_type in self._repositories:
                logger.warning(
                    f"Refresh interval for {entity_type.__name__} recorded after its "
                    "repository was created; it will not be applied"
                )
            return True

    def _create_default(self, entity_type: type) -> CacheRepository:
        interval = self._refresh_intervals.get(entity_type, self.default_refresh_interval)
        return CacheRepository(
            self.connection,
            entity_type,
            refresh_interval=interval,
            periodic_refresh=self.periodic_refresh,
            max_batch_size=self.max_batch_size,
        )
