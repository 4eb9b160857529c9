"""
models/user_account.py
----------------------
Domain model for application users. Stored in the `user_account` table.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass
class UserAccount:
    """
    Represents a user account.

    Attributes:
        name: Display name.
        email: Optional contact address (unique when set).
        is_active: Whether the account can sign in.
        id: Database primary key (None for new records).
    """
    name: str
    email: Optional[str] = None
    is_active: bool = True
    id: Optional[int] = None

    def __str__(self) -> str:
        status = "active" if self.is_active else "disabled"
        return f"#{self.id} {self.name} ({status})"
