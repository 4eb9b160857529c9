"""
db/init_db.py
-------------
Creates the tables of the sample entities if they do not already exist.
Run this module directly to initialize a fresh database:
    python -m db.init_db
"""

from contextlib import closing

from db.base import ConnectionProvider
from utils.logger import get_logger

logger = get_logger(__name__)

SCHEMA_STATEMENTS = (
    # UserAccount
    """
    CREATE TABLE IF NOT EXISTS user_account (
        id              SERIAL PRIMARY KEY,
        name            VARCHAR(100) NOT NULL,
        email           VARCHAR(255) UNIQUE,
        is_active       BOOLEAN NOT NULL DEFAULT TRUE
    );
    """,
    # AuditEntry
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        entry_number    SERIAL PRIMARY KEY,
        action          VARCHAR(100) NOT NULL,
        user_id         INT REFERENCES user_account(id) ON DELETE SET NULL
    );
    """,
)


def create_tables(connection: ConnectionProvider) -> None:
    """
    Execute the schema SQL to create all tables.
    Safe to call multiple times (uses IF NOT EXISTS).
    """
    conn = connection.get_connection()
    try:
        with closing(conn.cursor()) as cur:
            for statement in SCHEMA_STATEMENTS:
                cur.execute(statement)
        conn.commit()
        logger.info("Database schema initialized successfully.")
    except Exception as e:
        conn.rollback()
        logger.error(f"Failed to initialize schema: {e}")
        raise
    finally:
        connection.release_connection(conn)


if __name__ == "__main__":
    from db.configuration import DatabaseConfiguration
    from db.connection import PostgresConnection

    provider = PostgresConnection(DatabaseConfiguration.from_env())
    try:
        create_tables(provider)
    finally:
        provider.close()
    print("Database schema created successfully.")
