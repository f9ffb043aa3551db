from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import pytest

from app.audit import RepositoryAuditSink
from app.domain.account import Account
from app.domain.credential import Credential
from app.domain.errors import (
    ConcurrentModificationError,
    EmailAlreadyExistsError,
    UsernameAlreadyExistsError,
)
from app.domain.policy import LockoutPolicy, PasswordPolicy
from app.domain.service import AccountService
from app.domain.status import AccountStatus, AccountStatusType

FAST_PASSWORD_POLICY = PasswordPolicy(bcrypt_rounds=4)
PASSWORD = "Aa1!aaaa"


@dataclass
class FakeAuditLogRecord:
    audit_id: int
    account_id: str | None
    tenant_id: str | None
    event_type: str
    actor: str | None
    metadata: dict
    created_at: datetime


def account_from_snapshot(snapshot: dict[str, Any]) -> Account:
    fields = dict(snapshot)
    fields["credential"] = Credential.from_hash(fields.pop("password_hash"))
    fields["status"] = AccountStatus(
        AccountStatusType(fields.pop("status")),
        fields.pop("status_reason"),
        fields.pop("status_changed_at"),
    )
    return Account.reconstitute(**fields)


class FakeRepository:
    """In-memory repository mimicking the Postgres constraints and version check."""

    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.audit_log: list[FakeAuditLogRecord] = []
        self._audit_seq = 0
        self.saves = 0

    def find_by_id(self, account_id: str, tenant_id: str) -> Account | None:
        row = self._rows.get((tenant_id, account_id))
        return account_from_snapshot(row) if row else None

    def find_by_login(self, identifier: str, tenant_id: str) -> Account | None:
        for (row_tenant, _), row in self._rows.items():
            if row_tenant == tenant_id and identifier in (row["email"], row["username"]):
                return account_from_snapshot(row)
        return None

    def exists_by_email(self, email: str, tenant_id: str, exclude_id: str | None = None) -> bool:
        return self._exists("email", email, tenant_id, exclude_id)

    def exists_by_username(self, username: str, tenant_id: str, exclude_id: str | None = None) -> bool:
        return self._exists("username", username, tenant_id, exclude_id)

    def save(self, account: Account) -> Account:
        snapshot = account.to_snapshot()
        key = (account.tenant_id, account.account_id)
        with self._lock:
            for (tenant_id, account_id), row in self._rows.items():
                if tenant_id != account.tenant_id or account_id == account.account_id:
                    continue
                if row["email"] == account.email:
                    raise EmailAlreadyExistsError(account.email, account.tenant_id)
                if row["username"] == account.username:
                    raise UsernameAlreadyExistsError(account.username, account.tenant_id)
            stored = self._rows.get(key)
            stored_version = stored["version"] if stored else 0
            if stored_version != account.version:
                raise ConcurrentModificationError(account.account_id, account.version)
            snapshot["version"] = stored_version + 1
            self._rows[key] = snapshot
            self.saves += 1
        return account_from_snapshot(snapshot)

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
        created_at: datetime | None = None,
    ) -> None:
        self._audit_seq += 1
        self.audit_log.append(
            FakeAuditLogRecord(
                audit_id=self._audit_seq,
                account_id=account_id,
                tenant_id=tenant_id,
                event_type=event_type,
                actor=actor,
                metadata=metadata or {},
                created_at=created_at or datetime.now(timezone.utc),
            )
        )

    def list_audit_events(
        self,
        *,
        tenant_id: str,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: tuple[datetime, int] | None = None,
    ):
        results = [record for record in self.audit_log if record.tenant_id == tenant_id]
        if account_id:
            results = [record for record in results if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor

    def event_types(self, account_id: str) -> list[str]:
        return [record.event_type for record in self.audit_log if record.account_id == account_id]

    def _exists(self, column: str, value: str, tenant_id: str, exclude_id: str | None) -> bool:
        return any(
            row[column] == value and row_tenant == tenant_id and row_id != exclude_id
            for (row_tenant, row_id), row in self._rows.items()
        )


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def service(repository: FakeRepository) -> AccountService:
    return AccountService(
        repository,
        RepositoryAuditSink(repository),
        lockout_policy=LockoutPolicy(),
        password_policy=FAST_PASSWORD_POLICY,
    )


@pytest.fixture
def new_account() -> Account:
    """Scenario A account: pending, tenant T1."""
    return Account.create(
        email="a@x.com",
        username="alice",
        credential=Credential.create(PASSWORD, FAST_PASSWORD_POLICY),
        tenant_id="T1",
    )


@pytest.fixture
def active_account(new_account: Account) -> Account:
    new_account.activate()
    new_account.pull_events()
    return new_account
