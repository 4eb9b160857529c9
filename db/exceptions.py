"""
db/exceptions.py
----------------
Error taxonomy shared by the connection and repository layers.

"Not found" and "zero rows affected" are never errors: repositories
return None / False for those.
"""

from typing import Any, Optional


class DatabaseError(Exception):
    """Base class for every error raised by this package."""


class DatabaseConfigurationError(DatabaseError):
    """Missing connection settings, or an entity type that cannot be mapped."""


class DatabaseConnectionError(DatabaseError):
    """The database server cannot be reached or refused the credentials."""


class PoolTimeoutError(DatabaseError):
    """Every pooled connection stayed borrowed for the whole wait timeout."""


class RepositoryError(DatabaseError):
    """
    A CRUD or raw-SQL operation failed in the execution layer.

    The original driver exception is chained as ``__cause__``.

    Attributes:
        table: Table the repository is bound to.
        operation: Name of the repository operation that failed.
        entity_id: Key involved in the operation, when there is one.
    """

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        entity_id: Any = None,
    ) -> None:
        super().__init__(message)
        self.table = table
        self.operation = operation
        self.entity_id = entity_id
