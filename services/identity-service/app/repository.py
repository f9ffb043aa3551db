"""Database repository for identity/account data."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Tuple

from psycopg import errors as pg_errors
from psycopg.rows import dict_row, tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account
from .domain.credential import Credential
from .domain.errors import (
    ConcurrentModificationError,
    EmailAlreadyExistsError,
    UsernameAlreadyExistsError,
)
from .domain.status import AccountStatus, AccountStatusType

SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS accounts (
    account_id          TEXT PRIMARY KEY,
    tenant_id           TEXT NOT NULL,
    email               TEXT NOT NULL,
    username            TEXT NOT NULL,
    password_hash       TEXT NOT NULL,
    status              TEXT NOT NULL,
    status_reason       TEXT,
    status_changed_at   TIMESTAMPTZ NOT NULL,
    login_attempts      INTEGER NOT NULL DEFAULT 0 CHECK (login_attempts >= 0),
    locked_until        TIMESTAMPTZ,
    first_name          TEXT,
    last_name           TEXT,
    avatar              TEXT,
    phone_number        TEXT,
    email_verified      BOOLEAN NOT NULL DEFAULT FALSE,
    phone_verified      BOOLEAN NOT NULL DEFAULT FALSE,
    two_factor_enabled  BOOLEAN NOT NULL DEFAULT FALSE,
    two_factor_secret   TEXT,
    last_login_at       TIMESTAMPTZ,
    password_changed_at TIMESTAMPTZ,
    deleted_at          TIMESTAMPTZ,
    created_at          TIMESTAMPTZ NOT NULL,
    updated_at          TIMESTAMPTZ NOT NULL,
    version             INTEGER NOT NULL,
    CONSTRAINT accounts_tenant_email_key UNIQUE (tenant_id, email),
    CONSTRAINT accounts_tenant_username_key UNIQUE (tenant_id, username),
    CONSTRAINT accounts_locked_until_status CHECK (locked_until IS NULL OR status = 'locked')
);

CREATE TABLE IF NOT EXISTS identity_audit_log (
    audit_id    BIGSERIAL PRIMARY KEY,
    account_id  TEXT,
    tenant_id   TEXT,
    event_type  TEXT NOT NULL,
    actor       TEXT,
    metadata    JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS identity_audit_log_tenant_created_idx
    ON identity_audit_log (tenant_id, created_at DESC, audit_id DESC);
"""

_EMAIL_CONSTRAINT = "accounts_tenant_email_key"
_USERNAME_CONSTRAINT = "accounts_tenant_username_key"

# Every column except account_id/tenant_id/version, in snapshot key order.
_MUTABLE_COLUMNS = (
    "email",
    "username",
    "password_hash",
    "status",
    "status_reason",
    "status_changed_at",
    "login_attempts",
    "locked_until",
    "first_name",
    "last_name",
    "avatar",
    "phone_number",
    "email_verified",
    "phone_verified",
    "two_factor_enabled",
    "two_factor_secret",
    "last_login_at",
    "password_changed_at",
    "deleted_at",
    "created_at",
    "updated_at",
)
_ALL_COLUMNS = ("account_id", "tenant_id", *_MUTABLE_COLUMNS, "version")
_SELECT_COLUMNS = ", ".join(_ALL_COLUMNS)


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in identity_audit_log."""

    audit_id: int
    account_id: str | None
    tenant_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AccountRepository:
    """Postgres-backed account persistence with optimistic version checks."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def ensure_schema(self) -> None:
        """Create the account and audit tables when they do not exist."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_DDL)
            conn.commit()

    def find_by_id(self, account_id: str, tenant_id: str) -> Account | None:
        """Fetch an account belonging to the specified tenant or return ``None``."""
        return self._fetch_one(
            tenant_id,
            f"SELECT {_SELECT_COLUMNS} FROM accounts WHERE account_id = %s AND tenant_id = %s",
            (account_id, tenant_id),
        )

    def find_by_login(self, identifier: str, tenant_id: str) -> Account | None:
        """Fetch an account by email or username within the tenant."""
        return self._fetch_one(
            tenant_id,
            f"""
            SELECT {_SELECT_COLUMNS}
            FROM accounts
            WHERE tenant_id = %s AND (email = %s OR username = %s)
            LIMIT 1
            """,
            (tenant_id, identifier, identifier),
        )

    def exists_by_email(self, email: str, tenant_id: str, exclude_id: str | None = None) -> bool:
        return self._exists(tenant_id, "email", email, exclude_id)

    def exists_by_username(self, username: str, tenant_id: str, exclude_id: str | None = None) -> bool:
        return self._exists(tenant_id, "username", username, exclude_id)

    def save(self, account: Account) -> Account:
        """Insert a new account or update an existing one guarded by its version.

        Raises
        ------
        EmailAlreadyExistsError, UsernameAlreadyExistsError
            When the tenant-scoped unique constraints reject the write.
        ConcurrentModificationError
            When the stored version no longer matches ``account.version``.
        """
        snapshot = account.to_snapshot()
        values = [snapshot[column] for column in _MUTABLE_COLUMNS]
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT set_config('app.tenant_id', %s, true)", (account.tenant_id,))
                try:
                    if account.version == 0:
                        placeholders = ", ".join(["%s"] * len(_ALL_COLUMNS))
                        cur.execute(
                            f"""
                            INSERT INTO accounts ({_SELECT_COLUMNS})
                            VALUES ({placeholders})
                            RETURNING {_SELECT_COLUMNS}
                            """,
                            (account.account_id, account.tenant_id, *values, 1),
                        )
                    else:
                        assignments = ", ".join(f"{column} = %s" for column in _MUTABLE_COLUMNS)
                        cur.execute(
                            f"""
                            UPDATE accounts
                            SET {assignments}, version = version + 1
                            WHERE account_id = %s AND tenant_id = %s AND version = %s
                            RETURNING {_SELECT_COLUMNS}
                            """,
                            (*values, account.account_id, account.tenant_id, account.version),
                        )
                except pg_errors.UniqueViolation as exc:
                    conn.rollback()
                    mapped = self._map_unique_violation(exc, account)
                    if mapped is None:
                        raise
                    raise mapped from exc
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    raise ConcurrentModificationError(account.account_id, account.version)
            conn.commit()
        return self._map_record(row)

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> None:
        """Record an audit trail entry capturing identity workflow activity."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO identity_audit_log (account_id, tenant_id, event_type, actor, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, COALESCE(%s, NOW()))
                    """,
                    (account_id, tenant_id, event_type, actor, Json(metadata or {}), created_at),
                )
                conn.commit()

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
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return audit log entries scoped to a tenant with optional filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["tenant_id = %s"]
        params: list[Any] = [tenant_id]

        if account_id:
            clauses.append("account_id = %s")
            params.append(account_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, tenant_id, event_type, actor, metadata, created_at
            FROM identity_audit_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                records = [
                    AuditLogRecord(
                        audit_id=row[0],
                        account_id=row[1],
                        tenant_id=row[2],
                        event_type=row[3],
                        actor=row[4],
                        metadata=row[5] or {},
                        created_at=row[6],
                    )
                    for row in cur.fetchall()
                ]

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor

    def _fetch_one(self, tenant_id: str, query: str, params: tuple) -> Account | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT set_config('app.tenant_id', %s, true)", (tenant_id,))
                cur.execute(query, params)
                row = cur.fetchone()
        if not row:
            return None
        return self._map_record(row)

    def _exists(self, tenant_id: str, column: str, value: str, exclude_id: str | None) -> bool:
        query = f"SELECT 1 FROM accounts WHERE tenant_id = %s AND {column} = %s"
        params: list[Any] = [tenant_id, value]
        if exclude_id:
            query += " AND account_id <> %s"
            params.append(exclude_id)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query + " LIMIT 1", params)
                return cur.fetchone() is not None

    def _map_unique_violation(
        self, exc: pg_errors.UniqueViolation, account: Account
    ) -> Exception | None:
        constraint = exc.diag.constraint_name
        if constraint == _EMAIL_CONSTRAINT:
            return EmailAlreadyExistsError(account.email, account.tenant_id)
        if constraint == _USERNAME_CONSTRAINT:
            return UsernameAlreadyExistsError(account.username, account.tenant_id)
        return None

    def _map_record(self, row: dict[str, Any]) -> Account:
        """Convert a database row into the ``Account`` aggregate."""
        return Account.reconstitute(
            account_id=row["account_id"],
            tenant_id=row["tenant_id"],
            email=row["email"],
            username=row["username"],
            credential=Credential.from_hash(row["password_hash"]),
            status=AccountStatus(
                AccountStatusType(row["status"]),
                row["status_reason"],
                row["status_changed_at"],
            ),
            login_attempts=row["login_attempts"],
            locked_until=row["locked_until"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            avatar=row["avatar"],
            phone_number=row["phone_number"],
            email_verified=row["email_verified"],
            phone_verified=row["phone_verified"],
            two_factor_enabled=row["two_factor_enabled"],
            two_factor_secret=row["two_factor_secret"],
            last_login_at=row["last_login_at"],
            password_changed_at=row["password_changed_at"],
            deleted_at=row["deleted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            version=row["version"],
        )
