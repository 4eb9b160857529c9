"""
db/base.py
----------
Protocol describing what repositories need from a database connection provider.
"""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ConnectionProvider(Protocol):
    """Minimal connection surface the repository layer relies on."""

    #: Bound-parameter token of the underlying DB-API driver ("%s", "?", ...).
    placeholder: str

    @property
    def can_connect(self) -> bool:  # pragma: no cover - interface definition
        """Whether the last connection attempt succeeded."""

    def get_connection(self) -> Any:  # pragma: no cover - interface definition
        """Return an open DB-API connection."""

    def release_connection(self, conn: Any) -> None:  # pragma: no cover - interface definition
        """Give a connection obtained from get_connection() back."""

    def cancel(self, conn: Any) -> None:  # pragma: no cover - interface definition
        """Abort the statement currently running on ``conn``."""

    def test_connection(self) -> bool:  # pragma: no cover - interface definition
        """Run a trivial query and report whether it worked."""

    def close(self) -> None:  # pragma: no cover - interface definition
        """Release every resource held by the provider."""
