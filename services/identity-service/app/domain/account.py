from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from email_validator import EmailNotValidError, validate_email

from .credential import Credential
from .errors import (
    AccountDeletedError,
    AccountLockedError,
    AlreadyActiveError,
    AlreadyDeletedError,
    IllegalTransitionError,
    IncorrectCurrentPasswordError,
    InvalidEmailError,
    InvalidPhoneNumberError,
    InvalidUsernameError,
    RequiredFieldMissingError,
)
from .events import (
    AccountActivated,
    AccountCreated,
    AccountEvent,
    AccountLocked,
    AccountStatusChanged,
    LoginFailed,
    LoginSucceeded,
    PasswordChanged,
)
from .policy import LockoutPolicy
from .status import AccountStatus, AccountStatusType

DEFAULT_LOCKOUT_POLICY = LockoutPolicy()

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
RESERVED_USERNAMES = frozenset(
    {
        "admin",
        "administrator",
        "system",
        "root",
        "superuser",
        "support",
        "help",
        "info",
        "webmaster",
        "postmaster",
        "mail",
        "www",
        "api",
        "dev",
        "test",
        "demo",
    }
)
_USERNAME_CHARS = re.compile(r"^[a-zA-Z0-9._-]+$")
_USERNAME_REPEATED_SEPARATORS = re.compile(r"[._-]{2,}")
_PHONE_SEPARATORS = re.compile(r"[\s().-]")
_PHONE_NUMBER = re.compile(r"^\+?[0-9]{7,15}$")

ResetType = Literal["admin_reset", "forgot_password"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str | None) -> str:
    """Validate email syntax and return the lower-cased address."""
    if not email or not email.strip():
        raise RequiredFieldMissingError("email")
    try:
        result = validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise InvalidEmailError(str(exc)) from exc
    return result.normalized.lower()


def normalize_username(username: str | None) -> str:
    """Validate a username against the naming rules and return it lower-cased."""
    if not username or not username.strip():
        raise RequiredFieldMissingError("username")
    username = username.strip()
    if len(username) < USERNAME_MIN_LENGTH:
        raise InvalidUsernameError(f"username must be at least {USERNAME_MIN_LENGTH} characters")
    if len(username) > USERNAME_MAX_LENGTH:
        raise InvalidUsernameError(f"username must be at most {USERNAME_MAX_LENGTH} characters")
    if not _USERNAME_CHARS.match(username):
        raise InvalidUsernameError("username may only contain letters, digits, '.', '-' and '_'")
    if _USERNAME_REPEATED_SEPARATORS.search(username):
        raise InvalidUsernameError("username may not contain consecutive separators")
    if username[0] in "._-" or username[-1] in "._-":
        raise InvalidUsernameError("username may not start or end with a separator")
    lowered = username.lower()
    if lowered in RESERVED_USERNAMES:
        raise InvalidUsernameError(f"username '{lowered}' is reserved")
    return lowered


def normalize_phone_number(phone_number: str) -> str:
    compact = _PHONE_SEPARATORS.sub("", phone_number)
    if not _PHONE_NUMBER.match(compact):
        raise InvalidPhoneNumberError("phone number must contain 7 to 15 digits")
    return compact


class Account:
    """Aggregate root owning credential checks, login throttling and lifecycle state.

    Identity is tenant scoped: ``(tenant_id, account_id)``. Every public
    mutator validates before it writes, so a raised error leaves the aggregate
    exactly as it was. Events are buffered in emission order until the caller
    drains them with :meth:`pull_events` after a successful save.

    Invariants held after every operation:

    * ``login_attempts >= 0``
    * ``locked_until`` is only set while the status is ``locked``; a locked
      account without ``locked_until`` is locked indefinitely
    * status changes follow ``status.TRANSITIONS``
    * a ``deleted`` account rejects every further mutation
    """

    def __init__(
        self,
        *,
        account_id: str,
        tenant_id: str,
        email: str,
        username: str,
        credential: Credential,
        status: AccountStatus,
        login_attempts: int = 0,
        locked_until: datetime | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        avatar: str | None = None,
        phone_number: str | None = None,
        email_verified: bool = False,
        phone_verified: bool = False,
        two_factor_enabled: bool = False,
        two_factor_secret: str | None = None,
        last_login_at: datetime | None = None,
        password_changed_at: datetime | None = None,
        deleted_at: datetime | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
        version: int = 0,
    ) -> None:
        if login_attempts < 0:
            raise ValueError("login_attempts must be non-negative")
        if locked_until is not None and not status.is_locked:
            raise ValueError("locked_until requires a locked status")

        self._account_id = account_id
        self._tenant_id = tenant_id
        self._email = email
        self._username = username
        self._credential = credential
        self._status = status
        self._login_attempts = login_attempts
        self._locked_until = locked_until
        self._first_name = first_name
        self._last_name = last_name
        self._avatar = avatar
        self._phone_number = phone_number
        self._email_verified = email_verified
        self._phone_verified = phone_verified
        self._two_factor_enabled = two_factor_enabled
        self._two_factor_secret = two_factor_secret
        self._last_login_at = last_login_at
        self._password_changed_at = password_changed_at
        self._deleted_at = deleted_at
        self._created_at = created_at or _utcnow()
        self._updated_at = updated_at or self._created_at
        self._version = version
        self._events: list[AccountEvent] = []

    # factories

    @classmethod
    def create(
        cls,
        *,
        email: str | None,
        username: str | None,
        credential: Credential | None,
        tenant_id: str | None,
        first_name: str | None = None,
        last_name: str | None = None,
        avatar: str | None = None,
        phone_number: str | None = None,
        account_id: str | None = None,
    ) -> "Account":
        """Build a new ``pending`` account and record ``AccountCreated``."""
        normalized_email = normalize_email(email)
        normalized_username = normalize_username(username)
        if credential is None:
            raise RequiredFieldMissingError("password")
        if not tenant_id or not tenant_id.strip():
            raise RequiredFieldMissingError("tenant_id")
        phone = normalize_phone_number(phone_number) if phone_number else None

        now = _utcnow()
        account = cls(
            account_id=account_id or str(uuid.uuid4()),
            tenant_id=tenant_id,
            email=normalized_email,
            username=normalized_username,
            credential=credential,
            status=AccountStatus(AccountStatusType.pending, "Account created", now),
            first_name=first_name,
            last_name=last_name,
            avatar=avatar,
            phone_number=phone,
            created_at=now,
            updated_at=now,
        )
        account._record(
            AccountCreated(
                account_id=account.account_id,
                tenant_id=account.tenant_id,
                occurred_at=now,
                email=account.email,
                username=account.username,
            )
        )
        return account

    @classmethod
    def reconstitute(
        cls,
        *,
        account_id: str,
        tenant_id: str,
        email: str,
        username: str,
        credential: Credential,
        status: AccountStatus,
        login_attempts: int = 0,
        locked_until: datetime | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        avatar: str | None = None,
        phone_number: str | None = None,
        email_verified: bool = False,
        phone_verified: bool = False,
        two_factor_enabled: bool = False,
        two_factor_secret: str | None = None,
        last_login_at: datetime | None = None,
        password_changed_at: datetime | None = None,
        deleted_at: datetime | None = None,
        created_at: datetime | None = None,
        updated_at: datetime | None = None,
        version: int = 0,
    ) -> "Account":
        """Rebuild an aggregate loaded from storage; no events are recorded."""
        return cls(
            account_id=account_id,
            tenant_id=tenant_id,
            email=email,
            username=username,
            credential=credential,
            status=status,
            login_attempts=login_attempts,
            locked_until=locked_until,
            first_name=first_name,
            last_name=last_name,
            avatar=avatar,
            phone_number=phone_number,
            email_verified=email_verified,
            phone_verified=phone_verified,
            two_factor_enabled=two_factor_enabled,
            two_factor_secret=two_factor_secret,
            last_login_at=last_login_at,
            password_changed_at=password_changed_at,
            deleted_at=deleted_at,
            created_at=created_at,
            updated_at=updated_at,
            version=version,
        )

    # accessors

    @property
    def account_id(self) -> str:
        return self._account_id

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    @property
    def email(self) -> str:
        return self._email

    @property
    def username(self) -> str:
        return self._username

    @property
    def credential(self) -> Credential:
        return self._credential

    @property
    def status(self) -> AccountStatus:
        return self._status

    @property
    def login_attempts(self) -> int:
        return self._login_attempts

    @property
    def locked_until(self) -> datetime | None:
        return self._locked_until

    @property
    def first_name(self) -> str | None:
        return self._first_name

    @property
    def last_name(self) -> str | None:
        return self._last_name

    @property
    def avatar(self) -> str | None:
        return self._avatar

    @property
    def phone_number(self) -> str | None:
        return self._phone_number

    @property
    def email_verified(self) -> bool:
        return self._email_verified

    @property
    def phone_verified(self) -> bool:
        return self._phone_verified

    @property
    def two_factor_enabled(self) -> bool:
        return self._two_factor_enabled

    @property
    def two_factor_secret(self) -> str | None:
        return self._two_factor_secret

    @property
    def last_login_at(self) -> datetime | None:
        return self._last_login_at

    @property
    def password_changed_at(self) -> datetime | None:
        return self._password_changed_at

    @property
    def deleted_at(self) -> datetime | None:
        return self._deleted_at

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def updated_at(self) -> datetime:
        return self._updated_at

    @property
    def version(self) -> int:
        return self._version

    @property
    def full_name(self) -> str:
        if self._first_name and self._last_name:
            return f"{self._first_name} {self._last_name}"
        return self._first_name or self._last_name or self._username

    @property
    def display_name(self) -> str:
        return self.full_name

    @property
    def can_perform_action(self) -> bool:
        return self._status.is_active and self._email_verified

    @property
    def pending_events(self) -> tuple[AccountEvent, ...]:
        return tuple(self._events)

    def pull_events(self) -> list[AccountEvent]:
        """Return buffered events in emission order and clear the buffer."""
        events, self._events = self._events, []
        return events

    # lifecycle

    def activate(self) -> None:
        """Move the account to ``active`` and mark the email as verified."""
        if self._status.is_active:
            raise AlreadyActiveError()
        now = _utcnow()
        self._transition(AccountStatusType.active, "Account activated", now)
        self._email_verified = True
        self._record(
            AccountActivated(account_id=self._account_id, tenant_id=self._tenant_id, occurred_at=now)
        )

    def deactivate(self, reason: str | None = None) -> None:
        self._change_status(AccountStatusType.inactive, reason or "Account deactivated")

    def suspend(self, reason: str | None = None) -> None:
        self._change_status(AccountStatusType.suspended, reason or "Account suspended")

    def restore(self, reason: str | None = None) -> None:
        self._change_status(AccountStatusType.active, reason or "Account restored")

    def lock(self, reason: str | None = None, until: datetime | None = None) -> None:
        """Lock an active account, indefinitely when ``until`` is omitted.

        A naive ``until`` is taken to be UTC.
        """
        if until is not None and until.tzinfo is None:
            until = until.replace(tzinfo=timezone.utc)
        now = _utcnow()
        self._apply_lock(reason or "Account locked", until, now)

    def unlock(self) -> None:
        """Return a locked account to ``active`` and clear its failed-login count."""
        if not self._status.is_locked:
            raise IllegalTransitionError(self._status.value.value, AccountStatusType.active.value)
        self._change_status(AccountStatusType.active, "Account unlocked")

    def delete(self, reason: str | None = None) -> None:
        """Soft-delete the account; the aggregate is kept for audit history."""
        if self._status.is_deleted:
            raise AlreadyDeletedError()
        now = _utcnow()
        previous = self._transition(AccountStatusType.deleted, reason or "Account deleted", now)
        self._deleted_at = now
        self._record_status_change(previous, now)

    # authentication

    def verify_password(self, plaintext: str, policy: LockoutPolicy = DEFAULT_LOCKOUT_POLICY) -> bool:
        """Check ``plaintext`` and update the failed-login accounting.

        An expired time-bounded lock is lifted before checking. A mismatch
        increments ``login_attempts``; reaching ``policy.max_attempts`` on an
        active account locks it for ``policy.lock_duration`` within the same
        call. Returns the match result and never raises for a wrong password.

        Raises
        ------
        AccountDeletedError
            When the account is deleted.
        AccountLockedError
            When the account is locked indefinitely or the lock has not expired.
        CredentialCorruptedError
            When the stored hash is malformed.
        """
        if self._status.is_deleted:
            raise AccountDeletedError()
        now = _utcnow()
        lock_expired = False
        if self._status.is_locked:
            if self._locked_until is None or self._locked_until > now:
                raise AccountLockedError(self._locked_until)
            lock_expired = True

        matched = self._credential.verify(plaintext)

        if lock_expired:
            previous = self._transition(AccountStatusType.active, "Lock expired", now)
            self._record_status_change(previous, now)

        if matched:
            self._login_attempts = 0
            self._last_login_at = now
            self._record(
                LoginSucceeded(account_id=self._account_id, tenant_id=self._tenant_id, occurred_at=now)
            )
        else:
            self._login_attempts += 1
            if self._login_attempts >= policy.max_attempts and self._status.is_active:
                self._apply_lock("Too many failed login attempts", now + policy.lock_duration, now)
            self._record(
                LoginFailed(
                    account_id=self._account_id,
                    tenant_id=self._tenant_id,
                    occurred_at=now,
                    login_attempts=self._login_attempts,
                )
            )
        self._updated_at = now
        return matched

    def change_password(self, current_plaintext: str, new_credential: Credential) -> None:
        self._ensure_not_deleted()
        if new_credential is None:
            raise RequiredFieldMissingError("password")
        if not self._credential.verify(current_plaintext):
            raise IncorrectCurrentPasswordError()
        now = _utcnow()
        self._credential = new_credential
        self._password_changed_at = now
        self._updated_at = now
        self._record(
            PasswordChanged(
                account_id=self._account_id,
                tenant_id=self._tenant_id,
                occurred_at=now,
                change_type="user_initiated",
            )
        )

    def reset_password(self, new_credential: Credential, reset_type: ResetType = "admin_reset") -> None:
        """Replace the credential without checking the current password."""
        self._ensure_not_deleted()
        if new_credential is None:
            raise RequiredFieldMissingError("password")
        if reset_type not in ("admin_reset", "forgot_password"):
            raise ValueError(f"unsupported reset type: {reset_type}")
        now = _utcnow()
        self._credential = new_credential
        self._login_attempts = 0
        self._password_changed_at = now
        self._updated_at = now
        self._record(
            PasswordChanged(
                account_id=self._account_id,
                tenant_id=self._tenant_id,
                occurred_at=now,
                change_type=reset_type,
            )
        )

    # profile

    def update_profile(
        self,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        avatar: str | None = None,
        phone_number: str | None = None,
    ) -> None:
        """Update the given profile fields; ``None`` leaves a field unchanged.

        An empty ``phone_number`` removes the number and its verification.
        """
        self._ensure_not_deleted()
        phone = normalize_phone_number(phone_number) if phone_number else None

        if first_name is not None:
            self._first_name = first_name
        if last_name is not None:
            self._last_name = last_name
        if avatar is not None:
            self._avatar = avatar
        if phone_number == "":
            self._phone_number = None
            self._phone_verified = False
        elif phone is not None and phone != self._phone_number:
            self._phone_number = phone
            self._phone_verified = False
        self._updated_at = _utcnow()

    def verify_email(self) -> None:
        self._ensure_not_deleted()
        self._email_verified = True
        self._updated_at = _utcnow()

    def verify_phone(self) -> None:
        self._ensure_not_deleted()
        if not self._phone_number:
            raise RequiredFieldMissingError("phone_number")
        self._phone_verified = True
        self._updated_at = _utcnow()

    def enable_two_factor(self, secret: str) -> None:
        self._ensure_not_deleted()
        if not secret:
            raise RequiredFieldMissingError("two_factor_secret")
        self._two_factor_enabled = True
        self._two_factor_secret = secret
        self._updated_at = _utcnow()

    def disable_two_factor(self) -> None:
        self._ensure_not_deleted()
        self._two_factor_enabled = False
        self._two_factor_secret = None
        self._updated_at = _utcnow()

    def to_snapshot(self) -> dict[str, Any]:
        """Flat view of the aggregate used by the persistence layer."""
        return {
            "account_id": self._account_id,
            "tenant_id": self._tenant_id,
            "email": self._email,
            "username": self._username,
            "password_hash": self._credential.password_hash,
            "status": self._status.value.value,
            "status_reason": self._status.reason,
            "status_changed_at": self._status.changed_at,
            "login_attempts": self._login_attempts,
            "locked_until": self._locked_until,
            "first_name": self._first_name,
            "last_name": self._last_name,
            "avatar": self._avatar,
            "phone_number": self._phone_number,
            "email_verified": self._email_verified,
            "phone_verified": self._phone_verified,
            "two_factor_enabled": self._two_factor_enabled,
            "two_factor_secret": self._two_factor_secret,
            "last_login_at": self._last_login_at,
            "password_changed_at": self._password_changed_at,
            "deleted_at": self._deleted_at,
            "created_at": self._created_at,
            "updated_at": self._updated_at,
            "version": self._version,
        }

    def __repr__(self) -> str:
        return (
            f"Account(account_id={self._account_id!r}, tenant_id={self._tenant_id!r}, "
            f"status={self._status.value.value!r})"
        )

    # internals

    def _ensure_not_deleted(self) -> None:
        if self._status.is_deleted:
            raise AccountDeletedError()

    def _transition(self, target: AccountStatusType, reason: str, now: datetime) -> AccountStatus:
        """Swap in a new status value and return the previous one."""
        if not self._status.can_transition_to(target):
            raise IllegalTransitionError(self._status.value.value, target.value)
        previous = self._status
        self._status = AccountStatus(target, reason, now)
        if previous.is_locked:
            self._locked_until = None
            self._login_attempts = 0
        self._updated_at = now
        return previous

    def _change_status(self, target: AccountStatusType, reason: str) -> None:
        now = _utcnow()
        previous = self._transition(target, reason, now)
        self._record_status_change(previous, now)

    def _apply_lock(self, reason: str, until: datetime | None, now: datetime) -> None:
        self._transition(AccountStatusType.locked, reason, now)
        self._locked_until = until
        self._record(
            AccountLocked(
                account_id=self._account_id,
                tenant_id=self._tenant_id,
                occurred_at=now,
                reason=reason,
                locked_until=until,
                login_attempts=self._login_attempts,
            )
        )

    def _record_status_change(self, previous: AccountStatus, now: datetime) -> None:
        self._record(
            AccountStatusChanged(
                account_id=self._account_id,
                tenant_id=self._tenant_id,
                occurred_at=now,
                from_status=previous.value.value,
                to_status=self._status.value.value,
                reason=self._status.reason,
            )
        )

    def _record(self, event: AccountEvent) -> None:
        self._events.append(event)
