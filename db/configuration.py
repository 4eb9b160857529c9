"""
db/configuration.py
-------------------
Connection settings passed to a connection provider.
"""

from dataclasses import dataclass

import config


@dataclass
class DatabaseConfiguration:
    """
    Plain value object holding everything needed to open a connection.

    Attributes:
        server: Hostname or IP address of the database server.
        database: Database name.
        username: Login used to authenticate.
        password: Password for ``username``.
        port: TCP port; -1 means "not configured".
        connection_timeout: Connect timeout in seconds; -1 means "driver default".
    """
    server: str = ""
    database: str = ""
    username: str = ""
    password: str = ""
    port: int = -1
    connection_timeout: int = -1

    def is_complete(self) -> bool:
        """True when enough is set to attempt a connection."""
        return bool(self.server and self.database)

    def connect_kwargs(self) -> dict:
        """Keyword arguments understood by ``psycopg2.connect``."""
        kwargs = {
            "host": self.server,
            "dbname": self.database,
            "user": self.username,
            "password": self.password,
        }
        if self.port > 0:
            kwargs["port"] = self.port
        if self.connection_timeout > 0:
            kwargs["connect_timeout"] = self.connection_timeout
        return kwargs

    @classmethod
    def localhost(cls) -> "DatabaseConfiguration":
        """Local development database. Not meant for production."""
        return cls(
            server="localhost",
            database="local_database",
            username="postgres",
            password="",
            port=5432,
            connection_timeout=120,
        )

    @classmethod
    def from_env(cls) -> "DatabaseConfiguration":
        """Build the configuration from the values loaded in config.py."""
        return cls(
            server=config.DB_HOST,
            database=config.DB_NAME,
            username=config.DB_USER,
            password=config.DB_PASS,
            port=config.DB_PORT,
            connection_timeout=config.DB_CONNECT_TIMEOUT,
        )

    def __str__(self) -> str:
        port = f":{self.port}" if self.port > 0 else ""
        return f"{self.username}@{self.server}{port}/{self.database}"
