"""
repositories/base_repo.py
-------------------------
Generic data access layer: CRUD for one entity dataclass against one table.

Every operation borrows its own connection from the provider, so a
repository can be shared between threads. Async methods run the same
code on the default thread pool and return exactly what the sync
methods return.
"""

import asyncio
import logging
import threading
from contextlib import closing, contextmanager
from enum import Enum
from typing import Any, Callable, Generic, Iterable, Iterator, Optional, Sequence, TypeVar

import config
from db.base import ConnectionProvider
from db.exceptions import DatabaseConfigurationError, DatabaseError, RepositoryError
from repositories.metadata import EntityMetadata, resolve_metadata
from utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CommandType(Enum):
    """How raw SQL passed to execute()/execute_scalar() is run."""
    TEXT = "text"
    STORED_PROCEDURE = "stored_procedure"


class _RowCountMismatch(Exception):
    """Rolls a batch transaction back without reporting an error."""


class _Cancellation:
    """Shared between an awaiting task and the worker running its statement."""

    def __init__(self):
        self._lock = threading.Lock()
        self._conn = None
        self.requested = False

    def attach(self, conn) -> bool:
        """Record the connection about to run; False if cancelled already."""
        with self._lock:
            if self.requested:
                return False
            self._conn = conn
            return True

    def detach(self) -> None:
        with self._lock:
            self._conn = None

    def abort(self, provider: ConnectionProvider) -> bool:
        """
        Mark the statement cancelled and abort it if it is still running.

        Holds the lock while cancelling, so the connection cannot be
        detached and handed back to the pool in between.
        """
        with self._lock:
            self.requested = True
            if self._conn is None:
                return False
            provider.cancel(self._conn)
            return True


def _chunks(items: Sequence, size: int) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class BaseRepository(Generic[T]):
    """
    Repository for CRUD operations on the table mapped to `entity_type`.

    Subclasses bound to a single entity can set `entity_type` as a class
    attribute and take only the connection in their constructor.
    """

    entity_type: Optional[type] = None

    def __init__(
        self,
        connection: ConnectionProvider,
        entity_type: Optional[type] = None,
        *,
        max_batch_size: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if connection is None:
            raise ValueError("A connection provider is required")
        entity_type = entity_type or type(self).entity_type
        if entity_type is None:
            raise DatabaseConfigurationError(
                f"{type(self).__name__} is not bound to an entity type"
            )
        self.connection = connection
        self.entity_type = entity_type
        self.metadata: EntityMetadata = resolve_metadata(entity_type)
        self.max_batch_size = max_batch_size or config.REPOSITORY_MAX_BATCH_SIZE
        if self.max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self.logger = logger or get_logger(__name__)

    # ── METADATA ──────────────────────────────────────────

    @property
    def table_name(self) -> str:
        return self.metadata.table_name

    @property
    def key_property_name(self) -> str:
        return self.metadata.key_property_name

    @property
    def entity_properties(self) -> tuple:
        return self.metadata.entity_properties

    @property
    def property_map(self):
        return self.metadata.property_map

    # ── READ ──────────────────────────────────────────────

    def get_by_id(self, entity_id: int) -> Optional[T]:
        """
        Fetch a single entity by key.

        Returns:
            The entity, or None if no row has that key.
        """
        sql = f"SELECT * FROM {self.table_name} WHERE {self.metadata.key_column} = {self._ph};"
        with self._operation("get", entity_id), self._connection() as conn:
            rows = self._query(conn, sql, (int(entity_id),))
        return rows[0] if rows else None

    def get_by_ids(self, ids: Iterable[int]) -> list[Optional[T]]:
        """
        Fetch several entities by key.

        Returns:
            A list aligned with ``ids``: position k holds the entity whose key
            is ids[k], or None when it does not exist. Duplicated ids get
            their own slot.
        """
        ids = [int(entity_id) for entity_id in ids]
        if not ids:
            return []

        found: dict[int, T] = {}
        with self._operation("get many"), self._connection() as conn:
            for chunk in _chunks(list(dict.fromkeys(ids)), self.max_batch_size):
                sql = (
                    f"SELECT * FROM {self.table_name} "
                    f"WHERE {self.metadata.key_column} IN ({self._placeholders(len(chunk))});"
                )
                for entity in self._query(conn, sql, tuple(chunk)):
                    found[self.metadata.key_value(entity)] = entity
        return [found.get(entity_id) for entity_id in ids]

    def get_all(self) -> list[T]:
        """Fetch every row of the table, in whatever order the database returns them."""
        sql = f"SELECT * FROM {self.table_name};"
        with self._operation("get all"), self._connection() as conn:
            return self._query(conn, sql)

    def exists(self, entity_id: int) -> bool:
        """True if a row with this key exists."""
        sql = f"SELECT COUNT(1) FROM {self.table_name} WHERE {self.metadata.key_column} = {self._ph};"
        with self._operation("check existence of", entity_id), self._connection() as conn:
            with closing(conn.cursor()) as cur:
                cur.execute(sql, (int(entity_id),))
                count = cur.fetchone()[0]
        return count > 0

    # ── CREATE ────────────────────────────────────────────

    def add(self, entity: T) -> int:
        """
        Insert a new row built from every field except the key.

        Returns:
            The key assigned by the database. The entity is left untouched.
        """
        props = self.metadata.insertable_properties
        key_column = self.metadata.key_column
        if props:
            sql = (
                f"INSERT INTO {self.table_name} ({self._columns(props)}) "
                f"VALUES ({self._placeholders(len(props))}) RETURNING {key_column};"
            )
        else:
            sql = f"INSERT INTO {self.table_name} DEFAULT VALUES RETURNING {key_column};"

        with self._operation("add"), self._transaction() as conn:
            with closing(conn.cursor()) as cur:
                cur.execute(sql, self.metadata.values(entity, props))
                new_id = int(cur.fetchone()[0])
        self.logger.info(f"Added {self.metadata.entity_name} #{new_id} to {self.table_name}")
        return new_id

    def add_many(self, entities: Iterable[T]) -> bool:
        """
        Insert several rows in one transaction, as multi-row INSERTs of at
        most `max_batch_size` rows each.

        Returns:
            True once everything is committed.

        Raises:
            RepositoryError: If any row fails; nothing is inserted then.
        """
        entities = list(entities)
        if not entities:
            return True

        props = self.metadata.insertable_properties
        with self._operation("add many"), self._transaction() as conn:
            with closing(conn.cursor()) as cur:
                for chunk in _chunks(entities, self.max_batch_size):
                    if not props:
                        for _ in chunk:
                            cur.execute(f"INSERT INTO {self.table_name} DEFAULT VALUES;")
                        continue
                    row = f"({self._placeholders(len(props))})"
                    sql = (
                        f"INSERT INTO {self.table_name} ({self._columns(props)}) "
                        f"VALUES {', '.join([row] * len(chunk))};"
                    )
                    params = [v for entity in chunk for v in self.metadata.values(entity, props)]
                    cur.execute(sql, params)
        self.logger.info(f"Added {len(entities)} {self.metadata.entity_name} rows to {self.table_name}")
        return True

    # ── UPDATE ────────────────────────────────────────────

    def update(self, entity: T) -> bool:
        """
        Rewrite every non-key column of the row matching the entity's key.

        Returns:
            True if a row was updated, False if no row has that key.
        """
        entity_id = getattr(entity, self.key_property_name, None)
        props = self.metadata.insertable_properties
        key_column = self.metadata.key_column
        set_clause = ", ".join(f"{self.metadata.column(p)} = {self._ph}" for p in props)
        sql = (
            f"UPDATE {self.table_name} SET {set_clause or f'{key_column} = {key_column}'} "
            f"WHERE {key_column} = {self._ph};"
        )

        with self._operation("update", entity_id), self._transaction() as conn:
            with closing(conn.cursor()) as cur:
                cur.execute(sql, [*self.metadata.values(entity, props), self.metadata.key_value(entity)])
                updated = cur.rowcount > 0
        if not updated:
            self.logger.warning(
                f"No {self.metadata.entity_name} was updated with ID {entity_id} in {self.table_name}"
            )
        return updated

    def update_many(self, entities: Iterable[T]) -> bool:
        """
        Update several rows in one transaction, one CASE-based UPDATE per
        chunk of at most `max_batch_size` entities.

        Returns:
            True if every entity matched a row; False (and nothing written)
            if any of them did not. Duplicated keys count as a mismatch.
        """
        entities = list(entities)
        if not entities:
            return True

        with self._operation("update many"):
            try:
                with self._transaction() as conn, closing(conn.cursor()) as cur:
                    for chunk in _chunks(entities, self.max_batch_size):
                        sql, params = self._batch_update_statement(chunk)
                        cur.execute(sql, params)
                        if cur.rowcount != len(chunk):
                            raise _RowCountMismatch(f"{cur.rowcount} of {len(chunk)} rows matched")
            except _RowCountMismatch as e:
                self.logger.warning(
                    f"Batch update of {len(entities)} {self.metadata.entity_name} rows "
                    f"rolled back: {e}"
                )
                return False
        self.logger.info(f"Updated {len(entities)} {self.metadata.entity_name} rows in {self.table_name}")
        return True

    # ── DELETE ────────────────────────────────────────────

    def delete(self, entity_id: int) -> bool:
        """
        Delete a row by key.

        Returns:
            True if a row was deleted, False if no row has that key.
        """
        sql = f"DELETE FROM {self.table_name} WHERE {self.metadata.key_column} = {self._ph};"
        with self._operation("delete", entity_id), self._transaction() as conn:
            with closing(conn.cursor()) as cur:
                cur.execute(sql, (entity_id,))
                deleted = cur.rowcount > 0
        if deleted:
            self.logger.info(f"Deleted {self.metadata.entity_name} #{entity_id} from {self.table_name}")
        else:
            self.logger.warning(
                f"Attempted to delete non-existent {self.metadata.entity_name} "
                f"with ID {entity_id} from {self.table_name}"
            )
        return deleted

    def delete_many(self, ids: Iterable[int]) -> bool:
        """
        Delete several rows by key in one transaction.

        Returns:
            True if every (distinct) key was deleted; False (and nothing
            deleted) if any of them did not exist.
        """
        ids = list(dict.fromkeys(ids))
        if not ids:
            return True

        with self._operation("delete many"):
            try:
                with self._transaction() as conn, closing(conn.cursor()) as cur:
                    for chunk in _chunks(ids, self.max_batch_size):
                        sql = (
                            f"DELETE FROM {self.table_name} "
                            f"WHERE {self.metadata.key_column} IN ({self._placeholders(len(chunk))});"
                        )
                        cur.execute(sql, tuple(chunk))
                        if cur.rowcount != len(chunk):
                            raise _RowCountMismatch(f"{cur.rowcount} of {len(chunk)} rows matched")
            except _RowCountMismatch as e:
                self.logger.warning(
                    f"Batch delete of {len(ids)} {self.metadata.entity_name} rows rolled back: {e}"
                )
                return False
        self.logger.info(f"Deleted {len(ids)} {self.metadata.entity_name} rows from {self.table_name}")
        return True

    # ── RAW SQL ───────────────────────────────────────────

    def execute(self, sql: str, params: Any = None, command_type: CommandType = CommandType.TEXT) -> int:
        """
        Run a statement outside the generic CRUD surface and commit it.

        Returns:
            Number of rows affected, as reported by the driver.
        """
        with self._operation("execute", sql=sql), self._transaction() as conn:
            with closing(conn.cursor()) as cur:
                return self._run_command(cur, sql, params, command_type)

    def execute_scalar(self, sql: str, params: Any = None, command_type: CommandType = CommandType.TEXT) -> Any:
        """
        Run a query and commit.

        Returns:
            First column of the first row, or None if there is no row.
        """
        with self._operation("execute scalar", sql=sql), self._transaction() as conn:
            with closing(conn.cursor()) as cur:
                self._run_command(cur, sql, params, command_type)
                return self._scalar(cur)

    def execute_batch(
        self,
        commands: Iterable[tuple[str, Any]],
        command_type: CommandType = CommandType.TEXT,
    ) -> bool:
        """
        Run ``(sql, params)`` pairs in a single transaction.

        Returns:
            True once everything is committed.

        Raises:
            RepositoryError: If any command fails; everything is rolled back.
        """
        with self._operation("execute batch"), self._transaction() as conn:
            with closing(conn.cursor()) as cur:
                for sql, params in commands:
                    self._run_command(cur, sql, params, command_type)
        return True

    # ── ASYNC ─────────────────────────────────────────────

    async def get_by_id_async(self, entity_id: int) -> Optional[T]:
        return await asyncio.to_thread(self.get_by_id, entity_id)

    async def get_by_ids_async(self, ids: Iterable[int]) -> list[Optional[T]]:
        return await asyncio.to_thread(self.get_by_ids, list(ids))

    async def get_all_async(self) -> list[T]:
        return await asyncio.to_thread(self.get_all)

    async def exists_async(self, entity_id: int) -> bool:
        return await asyncio.to_thread(self.exists, entity_id)

    async def add_async(self, entity: T) -> int:
        return await asyncio.to_thread(self.add, entity)

    async def add_many_async(self, entities: Iterable[T]) -> bool:
        return await asyncio.to_thread(self.add_many, list(entities))

    async def update_async(self, entity: T) -> bool:
        return await asyncio.to_thread(self.update, entity)

    async def update_many_async(self, entities: Iterable[T]) -> bool:
        return await asyncio.to_thread(self.update_many, list(entities))

    async def delete_async(self, entity_id: int) -> bool:
        return await asyncio.to_thread(self.delete, entity_id)

    async def delete_many_async(self, ids: Iterable[int]) -> bool:
        return await asyncio.to_thread(self.delete_many, list(ids))

    async def execute_async(
        self, sql: str, params: Any = None, command_type: CommandType = CommandType.TEXT
    ) -> int:
        """Async `execute`. Cancelling the awaiting task aborts the statement."""
        return await self._run_cancellable(
            "execute", sql, lambda cur: self._run_command(cur, sql, params, command_type)
        )

    async def execute_scalar_async(
        self, sql: str, params: Any = None, command_type: CommandType = CommandType.TEXT
    ) -> Any:
        """Async `execute_scalar`. Cancelling the awaiting task aborts the statement."""
        def work(cur):
            self._run_command(cur, sql, params, command_type)
            return self._scalar(cur)

        return await self._run_cancellable("execute scalar", sql, work)

    async def execute_batch_async(
        self,
        commands: Iterable[tuple[str, Any]],
        command_type: CommandType = CommandType.TEXT,
    ) -> bool:
        """Async `execute_batch`. Cancelling the awaiting task aborts and rolls back the batch."""
        commands = list(commands)

        def work(cur):
            for sql, params in commands:
                self._run_command(cur, sql, params, command_type)
            return True

        return await self._run_cancellable("execute batch", None, work)

    # ── LIFECYCLE ─────────────────────────────────────────

    def close(self) -> None:
        """Release resources owned by the repository (none for the base class)."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.metadata.entity_name} -> {self.table_name})"

    # ── HELPERS ───────────────────────────────────────────

    @property
    def _ph(self) -> str:
        return self.connection.placeholder

    def _placeholders(self, count: int) -> str:
        return ", ".join([self._ph] * count)

    def _columns(self, props: Sequence[str]) -> str:
        return ", ".join(self.metadata.column(p) for p in props)

    def _batch_update_statement(self, chunk: Sequence[T]) -> tuple[str, list]:
        """`UPDATE t SET col = CASE WHEN key = ? THEN ? ... ELSE col END, ... WHERE key IN (...)`."""
        key_column = self.metadata.key_column
        props = self.metadata.insertable_properties
        ids = [self.metadata.key_value(entity) for entity in chunk]

        whens = " ".join([f"WHEN {key_column} = {self._ph} THEN {self._ph}"] * len(chunk))
        set_clauses = []
        params: list = []
        for prop in props:
            column = self.metadata.column(prop)
            set_clauses.append(f"{column} = CASE {whens} ELSE {column} END")
            for entity_id, entity in zip(ids, chunk):
                params.extend((entity_id, getattr(entity, prop)))
        if not set_clauses:
            set_clauses.append(f"{key_column} = {key_column}")
        params.extend(ids)

        sql = (
            f"UPDATE {self.table_name} SET {', '.join(set_clauses)} "
            f"WHERE {key_column} IN ({self._placeholders(len(ids))});"
        )
        return sql, params

    def _query(self, conn, sql: str, params: Sequence = ()) -> list[T]:
        with closing(conn.cursor()) as cur:
            cur.execute(sql, params)
            columns = [d[0] for d in cur.description]
            return [self.metadata.to_entity(columns, row) for row in cur.fetchall()]

    @staticmethod
    def _run_command(cur, sql: str, params: Any, command_type: CommandType) -> int:
        if command_type is CommandType.STORED_PROCEDURE:
            cur.callproc(sql, params or ())
        elif params is None:
            cur.execute(sql)
        else:
            cur.execute(sql, params)
        return cur.rowcount

    @staticmethod
    def _scalar(cur) -> Any:
        if cur.description is None:
            return None
        row = cur.fetchone()
        return row[0] if row else None

    @contextmanager
    def _connection(self):
        conn = self.connection.get_connection()
        try:
            yield conn
        finally:
            self.connection.release_connection(conn)

    @contextmanager
    def _transaction(self):
        """One connection, one transaction: commit on success, rollback on error."""
        with self._connection() as conn:
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
            conn.commit()

    @contextmanager
    def _operation(self, name: str, entity_id: Any = None, sql: Optional[str] = None):
        """Log execution-layer failures and re-raise them as RepositoryError."""
        try:
            yield
        except DatabaseError:
            raise
        except Exception as e:
            target = f" #{entity_id}" if entity_id is not None else ""
            detail = f" [{sql}]" if sql else ""
            self.logger.error(
                f"Failed to {name} {self.metadata.entity_name}{target} "
                f"in {self.table_name}{detail}: {e}"
            )
            raise RepositoryError(
                f"Failed to {name} {self.metadata.entity_name} in {self.table_name}: {e}",
                table=self.table_name,
                operation=name,
                entity_id=entity_id,
            ) from e

    def _run_statement(self, cancellation: _Cancellation, name: str, sql: Optional[str],
                       work: Callable[[Any], Any]) -> Any:
        with self._operation(name, sql=sql), self._transaction() as conn:
            if not cancellation.attach(conn):
                return None
            try:
                with closing(conn.cursor()) as cur:
                    return work(cur)
            finally:
                cancellation.detach()

    async def _run_cancellable(self, name: str, sql: Optional[str], work: Callable[[Any], Any]) -> Any:
        loop = asyncio.get_running_loop()
        cancellation = _Cancellation()
        future = loop.run_in_executor(None, self._run_statement, cancellation, name, sql, work)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if not future.done():
                try:
                    if await loop.run_in_executor(None, cancellation.abort, self.connection):
                        self.logger.warning(f"{name} on {self.table_name} cancelled, aborting the statement")
                except Exception as e:
                    self.logger.error(f"Failed to abort {name} on {self.table_name}: {e}")
                await asyncio.wait({future})
            if not future.cancelled() and future.exception() is not None:
                # already logged by _operation in the worker
                self.logger.debug(f"{name} on {self.table_name} ended with: {future.exception()}")
            raise
