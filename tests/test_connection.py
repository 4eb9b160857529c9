from __future__ import annotations

import threading
import time

import psycopg2
import pytest
from psycopg2 import extensions, pool

from db.base import ConnectionProvider
from db.configuration import DatabaseConfiguration
from db.connection import PostgresConnection
from db.exceptions import (
    DatabaseConfigurationError,
    DatabaseConnectionError,
    DatabaseError,
    PoolTimeoutError,
)


class FakeCursor:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        pass

    def execute(self, sql, params=None) -> None:
        if self.fail:
            raise psycopg2.OperationalError("server closed the connection")

    def fetchone(self):
        return (1,)


class FakeConnection:
    def __init__(self, status: int = extensions.TRANSACTION_STATUS_IDLE, fail: bool = False) -> None:
        self.closed = 0
        self.status = status
        self.fail = fail
        self.rolled_back = False
        self.cancelled = False

    def get_transaction_status(self) -> int:
        return self.status

    def rollback(self) -> None:
        self.rolled_back = True
        self.status = extensions.TRANSACTION_STATUS_IDLE

    def cancel(self) -> None:
        self.cancelled = True

    def cursor(self) -> FakeCursor:
        return FakeCursor(self.fail)


class FakePool:
    instances: list["FakePool"] = []

    def __init__(self, minconn, maxconn, **kwargs) -> None:
        self.minconn = minconn
        self.maxconn = maxconn
        self.kwargs = kwargs
        self.next_connection = FakeConnection()
        self.returned = []
        self.closed = False
        FakePool.instances.append(self)

    def getconn(self):
        return self.next_connection

    def putconn(self, conn, close=False) -> None:
        self.returned.append((conn, close))

    def closeall(self) -> None:
        self.closed = True


@pytest.fixture()
def fake_pool(monkeypatch: pytest.MonkeyPatch) -> type[FakePool]:
    FakePool.instances = []
    monkeypatch.setattr("db.connection.pool.ThreadedConnectionPool", FakePool)
    return FakePool


# ── CONFIGURATION ─────────────────────────────────────────


def test_localhost_profile() -> None:
    configuration = DatabaseConfiguration.localhost()

    assert configuration.connect_kwargs() == {
        "host": "localhost",
        "dbname": "local_database",
        "user": "postgres",
        "password": "",
        "port": 5432,
        "connect_timeout": 120,
    }


def test_unset_port_and_timeout_are_left_to_the_driver() -> None:
    kwargs = DatabaseConfiguration("db.internal", "app", "svc", "secret").connect_kwargs()

    assert "port" not in kwargs
    assert "connect_timeout" not in kwargs


def test_configuration_string_hides_password() -> None:
    configuration = DatabaseConfiguration("db.internal", "app", "svc", "secret", port=6432)

    assert str(configuration) == "svc@db.internal:6432/app"
    assert "secret" not in PostgresConnection(configuration).dsn


def test_from_env_reads_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("config.DB_HOST", "pg.example.com")
    monkeypatch.setattr("config.DB_NAME", "inventory")

    configuration = DatabaseConfiguration.from_env()

    assert configuration.server == "pg.example.com"
    assert configuration.database == "inventory"


def test_is_complete() -> None:
    assert DatabaseConfiguration().is_complete() is False
    assert DatabaseConfiguration(server="localhost").is_complete() is False
    assert DatabaseConfiguration.localhost().is_complete() is True


# ── CONNECTION PROVIDER ───────────────────────────────────


def test_postgres_connection_is_a_provider() -> None:
    assert isinstance(PostgresConnection(), ConnectionProvider)


def test_sqlite_test_provider_is_a_provider(connection) -> None:
    assert isinstance(connection, ConnectionProvider)


def test_missing_configuration_is_rejected(fake_pool) -> None:
    provider = PostgresConnection(DatabaseConfiguration())

    with pytest.raises(DatabaseConfigurationError, match="no configuration loaded"):
        provider.get_connection()
    assert fake_pool.instances == []


def test_pool_is_created_lazily_once(fake_pool) -> None:
    provider = PostgresConnection(DatabaseConfiguration.localhost(), min_connections=2, max_connections=4)
    assert fake_pool.instances == []

    provider.get_connection()
    provider.get_connection()

    assert len(fake_pool.instances) == 1
    created = fake_pool.instances[0]
    assert (created.minconn, created.maxconn) == (2, 4)
    assert created.kwargs["dbname"] == "local_database"
    assert provider.can_connect is True


def test_unreachable_server_raises_connection_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(*args, **kwargs):
        raise psycopg2.OperationalError("could not connect to server")

    monkeypatch.setattr("db.connection.pool.ThreadedConnectionPool", refuse)
    provider = PostgresConnection(DatabaseConfiguration.localhost())

    with pytest.raises(DatabaseConnectionError) as excinfo:
        provider.get_connection()

    assert isinstance(excinfo.value, DatabaseError)
    assert isinstance(excinfo.value.__cause__, psycopg2.OperationalError)
    assert provider.can_connect is False
    assert provider.test_connection() is False


def test_release_rolls_back_open_transaction(fake_pool) -> None:
    provider = PostgresConnection(DatabaseConfiguration.localhost())
    conn = provider.get_connection()
    conn.status = extensions.TRANSACTION_STATUS_INTRANS

    provider.release_connection(conn)

    assert conn.rolled_back is True
    assert fake_pool.instances[0].returned == [(conn, False)]


def test_release_of_idle_connection_skips_rollback(fake_pool) -> None:
    provider = PostgresConnection(DatabaseConfiguration.localhost())
    conn = provider.get_connection()

    provider.release_connection(conn)

    assert conn.rolled_back is False


def test_release_discards_closed_connection(fake_pool) -> None:
    provider = PostgresConnection(DatabaseConfiguration.localhost())
    conn = provider.get_connection()
    conn.closed = 2

    provider.release_connection(conn)

    assert fake_pool.instances[0].returned == [(conn, True)]


def test_cancel(fake_pool) -> None:
    provider = PostgresConnection(DatabaseConfiguration.localhost())
    conn = provider.get_connection()

    provider.cancel(conn)

    assert conn.cancelled is True


def test_test_connection(fake_pool) -> None:
    provider = PostgresConnection(DatabaseConfiguration.localhost())

    assert provider.test_connection() is True

    fake_pool.instances[0].next_connection = FakeConnection(fail=True)
    assert provider.test_connection() is False
    assert provider.can_connect is False


def test_close_closes_the_pool(fake_pool) -> None:
    provider = PostgresConnection(DatabaseConfiguration.localhost())
    provider.get_connection()

    provider.close()
    provider.close()

    assert fake_pool.instances[0].closed is True
    provider.get_connection()
    assert len(fake_pool.instances) == 2


# ── POOL LIMITS ───────────────────────────────────────────


class LimitedPool(FakePool):
    """Fails like psycopg2 pools do once every connection is borrowed."""

    def __init__(self, minconn, maxconn, **kwargs) -> None:
        super().__init__(minconn, maxconn, **kwargs)
        self.borrowed = 0

    def getconn(self):
        if self.borrowed >= self.maxconn:
            raise pool.PoolError("connection pool exhausted")
        self.borrowed += 1
        return FakeConnection()

    def putconn(self, conn, close=False) -> None:
        super().putconn(conn, close)
        self.borrowed -= 1


@pytest.fixture()
def limited_pool(monkeypatch: pytest.MonkeyPatch) -> type[LimitedPool]:
    FakePool.instances = []
    monkeypatch.setattr("db.connection.pool.ThreadedConnectionPool", LimitedPool)
    return LimitedPool


def test_borrower_beyond_pool_size_waits_for_a_release(limited_pool) -> None:
    provider = PostgresConnection(DatabaseConfiguration.localhost(), min_connections=1, max_connections=2)
    first = provider.get_connection()
    provider.get_connection()
    borrowed, errors = [], []

    def borrow():
        try:
            borrowed.append(provider.get_connection())
        except Exception as e:
            errors.append(e)

    waiter = threading.Thread(target=borrow)
    waiter.start()
    time.sleep(0.3)
    assert waiter.is_alive()

    provider.release_connection(first)
    waiter.join(5)

    assert errors == []
    assert len(borrowed) == 1


def test_waiting_for_a_connection_times_out(limited_pool) -> None:
    configuration = DatabaseConfiguration("localhost", "app", "svc", "", connection_timeout=1)
    provider = PostgresConnection(configuration, min_connections=1, max_connections=1)
    provider.get_connection()

    with pytest.raises(PoolTimeoutError):
        provider.get_connection()


def test_release_after_close_frees_the_slot(limited_pool) -> None:
    provider = PostgresConnection(DatabaseConfiguration.localhost(), min_connections=1, max_connections=1)
    conn = provider.get_connection()

    provider.close()
    provider.release_connection(conn)

    assert provider.get_connection() is not None
