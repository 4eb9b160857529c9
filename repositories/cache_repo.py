"""
repositories/cache_repo.py
--------------------------
Read-through cache on top of BaseRepository.

The whole table is kept in memory as a key -> entity snapshot. A snapshot
older than the refresh interval is reloaded before the next read answers;
any write that changed the table drops it.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from db.base import ConnectionProvider
from repositories.base_repo import BaseRepository, T


class CacheState(Enum):
    UNINITIALIZED = "uninitialized"
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class _Snapshot:
    entities: Mapping[int, Any]
    refreshed_at: float


def _to_seconds(interval: Union[timedelta, float, int, None]) -> Optional[float]:
    if interval is None:
        return None
    seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
    return seconds if seconds > 0 else None


class CacheRepository(BaseRepository[T]):
    """
    Repository serving reads from an in-memory snapshot of the table.

    Caching is active only when `refresh_interval` is set; without it
    every call goes straight to the database.

    Snapshots are never modified: a refresh builds a new one and publishes
    it with a single attribute assignment, so readers never lock. Refreshes
    are serialized by `_refresh_lock`.
    """

    def __init__(
        self,
        connection: ConnectionProvider,
        entity_type: Optional[type] = None,
        refresh_interval: Union[timedelta, float, int, None] = None,
        periodic_refresh: bool = False,
        *,
        clock: Callable[[], float] = time.monotonic,
        **kwargs: Any,
    ):
        super().__init__(connection, entity_type, **kwargs)
        self.refresh_interval = _to_seconds(refresh_interval)
        self._clock = clock
        self._snapshot: Optional[_Snapshot] = None
        self._generation = 0
        self._refresh_lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._stop_refresh = threading.Event()
        self._refresh_thread: Optional[threading.Thread] = None

        if self.is_caching_enabled and periodic_refresh:
            self._start_periodic_refresh()

    # ── STATE ─────────────────────────────────────────────

    @property
    def is_caching_enabled(self) -> bool:
        return self.refresh_interval is not None

    @property
    def is_initialized(self) -> bool:
        return self._snapshot is not None

    @property
    def last_refresh(self) -> Optional[float]:
        """Clock value of the last published refresh, None when uninitialized."""
        snapshot = self._snapshot
        return snapshot.refreshed_at if snapshot else None

    @property
    def cache_size(self) -> int:
        snapshot = self._snapshot
        return len(snapshot.entities) if snapshot else 0

    @property
    def state(self) -> CacheState:
        if self._refresh_lock.locked():
            return CacheState.REFRESHING
        snapshot = self._snapshot
        if not self.is_caching_enabled or snapshot is None:
            return CacheState.UNINITIALIZED
        return CacheState.STALE if self._is_stale(snapshot) else CacheState.FRESH

    # ── READ ──────────────────────────────────────────────

    def get_by_id(self, entity_id: int) -> Optional[T]:
        if not self.is_caching_enabled:
            return super().get_by_id(entity_id)
        return self._current_entities().get(int(entity_id))

    def get_by_ids(self, ids: Iterable[int]) -> list[Optional[T]]:
        if not self.is_caching_enabled:
            return super().get_by_ids(ids)
        entities = self._current_entities()
        return [entities.get(int(entity_id)) for entity_id in ids]

    def get_all(self) -> list[T]:
        if not self.is_caching_enabled:
            return super().get_all()
        return list(self._current_entities().values())

    def exists(self, entity_id: int) -> bool:
        if not self.is_caching_enabled:
            return super().exists(entity_id)
        return int(entity_id) in self._current_entities()

    # ── WRITE ─────────────────────────────────────────────

    def add(self, entity: T) -> int:
        new_id = super().add(entity)
        self._invalidate_after_write()
        return new_id

    def add_many(self, entities: Iterable[T]) -> bool:
        added = super().add_many(entities)
        self._invalidate_after_write()
        return added

    def update(self, entity: T) -> bool:
        updated = super().update(entity)
        if updated:
            self._invalidate_after_write()
        return updated

    def update_many(self, entities: Iterable[T]) -> bool:
        updated = super().update_many(entities)
        if updated:
            self._invalidate_after_write()
        return updated

    def delete(self, entity_id: int) -> bool:
        deleted = super().delete(entity_id)
        if deleted:
            self._invalidate_after_write()
        return deleted

    def delete_many(self, ids: Iterable[int]) -> bool:
        deleted = super().delete_many(ids)
        if deleted:
            self._invalidate_after_write()
        return deleted

    # ── CACHE CONTROL ─────────────────────────────────────

    def invalidate_cache(self) -> None:
        """Drop the snapshot. Safe to call when nothing is cached."""
        with self._publish_lock:
            self._generation += 1
            self._snapshot = None

    def refresh_cache(self) -> None:
        """Reload the whole table now, whatever the snapshot's age."""
        self._refresh(force=True)

    async def refresh_cache_async(self) -> None:
        await asyncio.to_thread(self.refresh_cache)

    # ── LIFECYCLE ─────────────────────────────────────────

    def close(self) -> None:
        """Stop the periodic refresh thread, if any."""
        self._stop_refresh.set()
        thread = self._refresh_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
            self._refresh_thread = None
        super().close()

    # ── HELPERS ───────────────────────────────────────────

    def _is_stale(self, snapshot: Optional[_Snapshot]) -> bool:
        return snapshot is None or self._clock() - snapshot.refreshed_at >= self.refresh_interval

    def _current_entities(self) -> Mapping[int, T]:
        snapshot = self._snapshot
        if self._is_stale(snapshot):
            snapshot = self._refresh()
        return snapshot.entities

    def _invalidate_after_write(self) -> None:
        if self.is_caching_enabled:
            self.invalidate_cache()

    def _refresh(self, force: bool = False) -> _Snapshot:
        with self._refresh_lock:
            current = self._snapshot
            if not force and not self._is_stale(current):
                # another caller refreshed while we were waiting for the lock
                return current

            generation = self._generation
            try:
                rows = super().get_all()
            except Exception as e:
                self.logger.error(f"Error refreshing cache for entity {self.metadata.entity_name}: {e}")
                raise

            snapshot = _Snapshot(
                entities=MappingProxyType({self.metadata.key_value(e): e for e in rows}),
                refreshed_at=self._clock(),
            )
            with self._publish_lock:
                published = generation == self._generation
                if published:
                    self._snapshot = snapshot

            if published:
                self.logger.debug(
                    f"Cache refreshed for entity {self.metadata.entity_name}. Items: {len(snapshot.entities)}"
                )
            else:
                self.logger.debug(
                    f"Cache for {self.metadata.entity_name} was invalidated during refresh; not published"
                )
            return snapshot

    def _start_periodic_refresh(self) -> None:
        self._refresh_thread = threading.Thread(
            target=self._periodic_refresh_loop,
            name=f"cache-refresh-{self.table_name}",
            daemon=True,
        )
        self._refresh_thread.start()

    def _periodic_refresh_loop(self) -> None:
        while not self._stop_refresh.wait(self.refresh_interval):
            try:
                if self._is_stale(self._snapshot):
                    self._refresh()
            except Exception as e:
                self.logger.error(f"Error in periodic cache refresh for {self.metadata.entity_name}: {e}")
