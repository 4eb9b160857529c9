"""
db/connection.py
----------------
Manages the PostgreSQL connection pool.
Uses psycopg2's ThreadedConnectionPool so repositories can be shared
between worker threads.
"""

import threading
from typing import Optional

import psycopg2
from psycopg2 import extensions, pool

import config
from db.configuration import DatabaseConfiguration
from db.exceptions import DatabaseConfigurationError, DatabaseConnectionError, PoolTimeoutError
from utils.logger import get_logger

logger = get_logger(__name__)


class PostgresConnection:
    """
    Connection provider backed by a lazily created psycopg2 pool.

    The pool is opened on the first get_connection() call, so building
    a provider never touches the network.
    """

    placeholder = "%s"

    def __init__(
        self,
        configuration: Optional[DatabaseConfiguration] = None,
        min_connections: int = config.DB_POOL_MIN,
        max_connections: int = config.DB_POOL_MAX,
    ):
        self.configuration = configuration or DatabaseConfiguration.localhost()
        self.min_connections = min_connections
        self.max_connections = max_connections
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.Lock()
        # psycopg2 pools fail instead of blocking once every connection is out
        self._slots = threading.BoundedSemaphore(max_connections)
        self._can_connect = False

    @property
    def can_connect(self) -> bool:
        return self._can_connect

    @property
    def dsn(self) -> str:
        """Connection target without the password, safe to log."""
        return str(self.configuration)

    def init_pool(self) -> None:
        """
        Initialize the database connection pool.

        Raises:
            DatabaseConfigurationError: If no server/database is configured.
            DatabaseConnectionError: If the database is unreachable.
        """
        if not self.configuration.is_complete():
            raise DatabaseConfigurationError(
                "Cannot create connection if there is no configuration loaded"
            )
        with self._pool_lock:
            if self._pool is not None:
                return
            try:
                self._pool = pool.ThreadedConnectionPool(
                    self.min_connections,
                    self.max_connections,
                    **self.configuration.connect_kwargs(),
                )
            except psycopg2.OperationalError as e:
                self._can_connect = False
                logger.error(f"Failed to initialize database pool for {self.dsn}: {e}")
                raise DatabaseConnectionError(
                    f"Failed to create PostgreSQL connection: {e}"
                ) from e
            logger.info(f"Database connection pool initialized for {self.dsn}.")

    def get_connection(self):
        """
        Get a connection from the pool, opening the pool if needed.

        When all `max_connections` are borrowed, waits for one to be
        released, for at most the configured connection timeout.

        Returns:
            A psycopg2 connection object.

        Raises:
            DatabaseConfigurationError: If no server/database is configured.
            DatabaseConnectionError: If the database cannot be reached.
            PoolTimeoutError: If no connection was released in time.
        """
        if self._pool is None:
            self.init_pool()
        timeout = self.configuration.connection_timeout
        if not self._slots.acquire(timeout=timeout if timeout > 0 else None):
            logger.warning(f"No pooled connection to {self.dsn} became free within {timeout}s")
            raise PoolTimeoutError(
                f"All {self.max_connections} connections to {self.dsn} are in use"
            )
        try:
            conn = self._pool.getconn()
        except psycopg2.OperationalError as e:
            self._slots.release()
            self._can_connect = False
            logger.error(f"Failed to get a connection for {self.dsn}: {e}")
            raise DatabaseConnectionError(
                f"Failed to create PostgreSQL connection: {e}"
            ) from e
        except Exception:
            self._slots.release()
            raise
        self._can_connect = True
        return conn

    def release_connection(self, conn) -> None:
        """
        Return a connection back to the pool.

        Any transaction left open (e.g. by a plain SELECT) is rolled back
        so the next borrower starts clean.
        """
        try:
            if self._pool is None:
                return
            if not conn.closed and conn.get_transaction_status() != extensions.TRANSACTION_STATUS_IDLE:
                conn.rollback()
            self._pool.putconn(conn, close=bool(conn.closed))
        finally:
            self._slots.release()

    def cancel(self, conn) -> None:
        """Ask the server to abort the statement running on ``conn``."""
        if not conn.closed:
            conn.cancel()

    def test_connection(self) -> bool:
        """
        Check that a connection can be established with the current configuration.

        Returns:
            True if `SELECT 1` succeeded, False otherwise.
        """
        try:
            conn = self.get_connection()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1;")
                    cur.fetchone()
            finally:
                self.release_connection(conn)
            self._can_connect = True
        except Exception as e:
            logger.warning(f"PostgreSQL connection test failed for {self.dsn}: {e}")
            self._can_connect = False
        return self._can_connect

    def close(self) -> None:
        """Close all connections in the pool."""
        with self._pool_lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None
                logger.info("Database connection pool closed.")
