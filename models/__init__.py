"""
models/ - Sample entities
=========================
Dataclasses used by the demo and the tests. Each maps to one table.
"""

from models.audit_entry import AuditEntry
from models.user_account import UserAccount

__all__ = ["AuditEntry", "UserAccount"]
