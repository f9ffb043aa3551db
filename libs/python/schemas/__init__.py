"""Shared schema exports."""

from .account import Account, AccountState
from .audit import AccountAuditEvent

__all__ = [
    "Account",
    "AccountState",
    "AccountAuditEvent",
]
