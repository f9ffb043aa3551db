"""Domain events appended by the account aggregate.

The set of events is closed: ``AccountEvent`` is the union of every variant
and consumers dispatch over it with a single ``match`` statement.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, Literal, Union


@dataclass(frozen=True, slots=True, kw_only=True)
class _EventBase:
    account_id: str
    tenant_id: str
    occurred_at: datetime

    event_type: ClassVar[str]


@dataclass(frozen=True, slots=True, kw_only=True)
class AccountCreated(_EventBase):
    event_type: ClassVar[str] = "account.created"

    email: str
    username: str


@dataclass(frozen=True, slots=True, kw_only=True)
class AccountActivated(_EventBase):
    event_type: ClassVar[str] = "account.activated"


@dataclass(frozen=True, slots=True, kw_only=True)
class AccountLocked(_EventBase):
    event_type: ClassVar[str] = "account.locked"

    reason: str
    locked_until: datetime | None
    login_attempts: int


@dataclass(frozen=True, slots=True, kw_only=True)
class AccountStatusChanged(_EventBase):
    event_type: ClassVar[str] = "account.status_changed"

    from_status: str
    to_status: str
    reason: str | None


@dataclass(frozen=True, slots=True, kw_only=True)
class PasswordChanged(_EventBase):
    event_type: ClassVar[str] = "account.password_changed"

    change_type: Literal["user_initiated", "admin_reset", "forgot_password"]


@dataclass(frozen=True, slots=True, kw_only=True)
class LoginSucceeded(_EventBase):
    event_type: ClassVar[str] = "account.login_succeeded"


@dataclass(frozen=True, slots=True, kw_only=True)
class LoginFailed(_EventBase):
    event_type: ClassVar[str] = "account.login_failed"

    login_attempts: int


AccountEvent = Union[
    AccountCreated,
    AccountActivated,
    AccountLocked,
    AccountStatusChanged,
    PasswordChanged,
    LoginSucceeded,
    LoginFailed,
]
