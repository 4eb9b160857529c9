"""
models/audit_entry.py
---------------------
Domain model for audit trail entries. The key is `entry_number`, declared
with key_field(), and the table name is set explicitly.
"""

from dataclasses import dataclass
from typing import Optional

from repositories.metadata import key_field


@dataclass
class AuditEntry:
    """One recorded action. Stored in the `audit_log` table."""
    __tablename__ = "audit_log"

    action: str
    user_id: Optional[int] = None
    entry_number: Optional[int] = key_field(default=None)
