from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from pathlib import Path

import pytest

from repositories.base_repo import BaseRepository
from models import AuditEntry, UserAccount

SCHEMA = (
    """
    CREATE TABLE user_account (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        email TEXT UNIQUE,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE audit_log (
        entry_number INTEGER PRIMARY KEY AUTOINCREMENT,
        action TEXT NOT NULL,
        user_id INTEGER
    )
    """,
)


class SqliteConnection:
    """Connection provider over a sqlite file, one connection per borrow."""

    placeholder = "?"

    def __init__(self, path: Path) -> None:
        self.path = str(path)
        self.can_connect = False
        self.open_connections = 0
        self.connections_opened = 0
        self._lock = threading.Lock()

    def get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=10, check_same_thread=False)
        with self._lock:
            self.open_connections += 1
            self.connections_opened += 1
        self.can_connect = True
        return conn

    def release_connection(self, conn: sqlite3.Connection) -> None:
        conn.close()
        with self._lock:
            self.open_connections -= 1

    def cancel(self, conn: sqlite3.Connection) -> None:
        try:
            conn.interrupt()
        except sqlite3.ProgrammingError:
            pass

    def test_connection(self) -> bool:
        conn = self.get_connection()
        try:
            conn.execute("SELECT 1").fetchone()
        finally:
            self.release_connection(conn)
        return True

    def close(self) -> None:
        pass

    def run(self, sql: str, params: tuple = ()) -> list[tuple]:
        """Run SQL directly, bypassing the repositories."""
        conn = sqlite3.connect(self.path)
        try:
            rows = conn.execute(sql, params).fetchall()
            conn.commit()
            return rows
        finally:
            conn.close()


@pytest.fixture()
def connection(tmp_path: Path) -> SqliteConnection:
    provider = SqliteConnection(tmp_path / "test.db")
    for statement in SCHEMA:
        provider.run(statement)
    return provider


@pytest.fixture()
def users(connection: SqliteConnection) -> BaseRepository[UserAccount]:
    return BaseRepository(connection, UserAccount)


@pytest.fixture()
def audit(connection: SqliteConnection) -> BaseRepository[AuditEntry]:
    return BaseRepository(connection, AuditEntry)


@pytest.fixture()
def table_reads(monkeypatch: pytest.MonkeyPatch) -> Iterator[list[str]]:
    """Record every full-table read issued through BaseRepository.get_all."""
    calls: list[str] = []
    original = BaseRepository.get_all

    def counting_get_all(self):
        calls.append(self.table_name)
        return original(self)

    monkeypatch.setattr(BaseRepository, "get_all", counting_get_all)
    yield calls


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
