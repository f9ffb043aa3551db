"""Account lifecycle states and the legal transition table."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class AccountStatusType(str, Enum):
    pending = "pending"
    active = "active"
    inactive = "inactive"
    locked = "locked"
    suspended = "suspended"
    deleted = "deleted"


TRANSITIONS: Mapping[AccountStatusType, frozenset[AccountStatusType]] = MappingProxyType(
    {
        AccountStatusType.pending: frozenset({AccountStatusType.active, AccountStatusType.deleted}),
        AccountStatusType.active: frozenset(
            {
                AccountStatusType.inactive,
                AccountStatusType.locked,
                AccountStatusType.suspended,
                AccountStatusType.deleted,
            }
        ),
        AccountStatusType.inactive: frozenset({AccountStatusType.active, AccountStatusType.deleted}),
        AccountStatusType.locked: frozenset({AccountStatusType.active, AccountStatusType.deleted}),
        AccountStatusType.suspended: frozenset({AccountStatusType.active, AccountStatusType.deleted}),
        AccountStatusType.deleted: frozenset(),
    }
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class AccountStatus:
    """Immutable status value; a new instance is built for every transition."""

    value: AccountStatusType
    reason: str | None = None
    changed_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def pending(cls, reason: str | None = None) -> "AccountStatus":
        return cls(AccountStatusType.pending, reason)

    @classmethod
    def active(cls, reason: str | None = None) -> "AccountStatus":
        return cls(AccountStatusType.active, reason)

    @classmethod
    def inactive(cls, reason: str | None = None) -> "AccountStatus":
        return cls(AccountStatusType.inactive, reason)

    @classmethod
    def locked(cls, reason: str | None = None) -> "AccountStatus":
        return cls(AccountStatusType.locked, reason)

    @classmethod
    def suspended(cls, reason: str | None = None) -> "AccountStatus":
        return cls(AccountStatusType.suspended, reason)

    @classmethod
    def deleted(cls, reason: str | None = None) -> "AccountStatus":
        return cls(AccountStatusType.deleted, reason)

    def can_transition_to(self, target: AccountStatusType) -> bool:
        return target in TRANSITIONS[self.value]

    @property
    def is_pending(self) -> bool:
        return self.value is AccountStatusType.pending

    @property
    def is_active(self) -> bool:
        return self.value is AccountStatusType.active

    @property
    def is_locked(self) -> bool:
        return self.value is AccountStatusType.locked

    @property
    def is_deleted(self) -> bool:
        return self.value is AccountStatusType.deleted

    def __str__(self) -> str:
        return self.value.value
