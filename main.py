"""
main.py
-------
Demo entry point.

Responsibilities:
    - Open the PostgreSQL pool described by the environment (.env).
    - Create the sample schema.
    - Run a create / read / update / delete round trip through a
      caching repository factory, then shut everything down.
"""

from datetime import timedelta

from db.configuration import DatabaseConfiguration
from db.connection import PostgresConnection
from db.init_db import create_tables
from models import AuditEntry, UserAccount
from repositories import CacheRepositoryFactory
from utils.logger import get_logger

logger = get_logger(__name__)


def run_demo(factory: CacheRepositoryFactory) -> None:
    """Walk one user account through its whole lifecycle."""
    users = factory.create_repository(UserAccount)
    audit = factory.create_repository(AuditEntry)

    user_id = users.add(UserAccount(name="Alice"))
    audit.add(AuditEntry(action="create", user_id=user_id))
    logger.info(f"Created {users.get_by_id(user_id)}")

    users.update(UserAccount(id=user_id, name="Alicia"))
    audit.add(AuditEntry(action="rename", user_id=user_id))
    logger.info(f"Renamed to {users.get_by_id(user_id)}")

    users.delete(user_id)
    logger.info(f"Deleted #{user_id}; still there: {users.exists(user_id)}")
    logger.info(f"Audit trail holds {len(audit.get_all())} entries")


def main() -> None:
    """Initialize the database and run the demo."""

    # ── 1. Database setup ─────────────────────────────────
    logger.info("Initializing database...")
    connection = PostgresConnection(DatabaseConfiguration.from_env())
    if not connection.test_connection():
        logger.error(f"Cannot reach {connection.dsn}, aborting.")
        return
    create_tables(connection)

    # ── 2. Repositories ───────────────────────────────────
    factory = CacheRepositoryFactory(connection, default_refresh_interval=timedelta(minutes=5))
    factory.add_refresh_interval(AuditEntry, None)

    # ── 3. Demo + cleanup on shutdown ─────────────────────
    try:
        run_demo(factory)
    finally:
        factory.close()
        connection.close()
        logger.info("Demo finished.")


if __name__ == "__main__":
    main()
