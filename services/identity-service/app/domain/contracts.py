"""Domain-level request contracts and the ports the service depends on."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, Sequence, Tuple

from .account import Account
from .events import AccountEvent


@dataclass(slots=True)
class CreateAccountInput:
    """Inputs required to register an account within a tenant."""

    tenant_id: str
    email: str
    username: str
    password: str
    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None
    phone_number: str | None = None


@dataclass(slots=True)
class ProfileUpdate:
    """Profile changes; ``None`` fields are left untouched."""

    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None
    phone_number: str | None = None


class AccountRepository(Protocol):
    """Persistence boundary for the account aggregate.

    Implementations must enforce ``(tenant_id, email)`` and
    ``(tenant_id, username)`` uniqueness as a storage constraint and raise
    ``EmailAlreadyExistsError`` / ``UsernameAlreadyExistsError`` from
    :meth:`save` when it is violated. :meth:`save` must also reject a write
    whose ``account.version`` no longer matches storage with
    ``ConcurrentModificationError`` and return the stored aggregate with its
    new version.
    """

    def find_by_id(self, account_id: str, tenant_id: str) -> Account | None: ...

    def find_by_login(self, identifier: str, tenant_id: str) -> Account | None: ...

    def save(self, account: Account) -> Account: ...

    def exists_by_email(self, email: str, tenant_id: str, exclude_id: str | None = None) -> bool: ...

    def exists_by_username(
        self, username: str, tenant_id: str, exclude_id: str | None = None
    ) -> bool: ...

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> None: ...

    def list_audit_events(
        self,
        *,
        tenant_id: str,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[Any], Tuple[datetime, int] | None]: ...


class AuditSink(Protocol):
    """Receives drained events, in emission order, after each successful save."""

    def publish(self, events: Sequence[AccountEvent], actor: str | None = None) -> None: ...
