"""Account domain error taxonomy.

Every error carries a stable ``error_code`` that the HTTP layer translates into
a status code, and a ``category`` grouping it as validation, state, security,
conflict, not-found or integrity failure. Only ``CredentialCorruptedError`` is
fatal; everything else is recoverable by the caller and is raised before the
aggregate is mutated.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class AccountError(Exception):
    """Base class for account domain errors."""

    error_code: str = "ACCOUNT_ERROR"
    category: str = "general"
    fatal: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error_code": self.error_code, "message": self.message}
        for key, value in self.details.items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return payload


# validation


class RequiredFieldMissingError(AccountError):
    error_code = "REQUIRED_FIELD_MISSING"
    category = "validation"

    def __init__(self, field_name: str) -> None:
        super().__init__(f"{field_name} is required", field=field_name)
        self.field_name = field_name


class InvalidEmailError(AccountError):
    error_code = "INVALID_EMAIL"
    category = "validation"


class InvalidUsernameError(AccountError):
    error_code = "INVALID_USERNAME"
    category = "validation"


class InvalidPhoneNumberError(AccountError):
    error_code = "INVALID_PHONE_NUMBER"
    category = "validation"


class WeakSecretError(AccountError):
    """Raised when a plaintext password does not satisfy the password policy."""

    error_code = "WEAK_SECRET"
    category = "validation"


class SecretTooShortError(WeakSecretError):
    error_code = "SECRET_TOO_SHORT"

    def __init__(self, min_length: int) -> None:
        super().__init__(f"password must be at least {min_length} characters", min_length=min_length)


class SecretTooLongError(WeakSecretError):
    error_code = "SECRET_TOO_LONG"

    def __init__(self, max_length: int) -> None:
        super().__init__(f"password must be at most {max_length} characters", max_length=max_length)


# state legality


class IllegalTransitionError(AccountError):
    error_code = "ILLEGAL_TRANSITION"
    category = "state"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"cannot transition account from {current} to {target}",
            current_status=current,
            target_status=target,
        )
        self.current = current
        self.target = target


class AlreadyActiveError(AccountError):
    error_code = "ALREADY_ACTIVE"
    category = "state"

    def __init__(self) -> None:
        super().__init__("account is already active")


class AlreadyDeletedError(AccountError):
    error_code = "ALREADY_DELETED"
    category = "state"

    def __init__(self) -> None:
        super().__init__("account is already deleted")


class AccountDeletedError(AccountError):
    error_code = "ACCOUNT_DELETED"
    category = "state"

    def __init__(self) -> None:
        super().__init__("account has been deleted")


# security


class AccountLockedError(AccountError):
    error_code = "ACCOUNT_LOCKED"
    category = "security"

    def __init__(self, locked_until: datetime | None = None) -> None:
        if locked_until is None:
            message = "account is locked"
        else:
            message = f"account is locked until {locked_until.isoformat()}"
        super().__init__(message, locked_until=locked_until)
        self.locked_until = locked_until


class IncorrectCurrentPasswordError(AccountError):
    error_code = "INCORRECT_CURRENT_PASSWORD"
    category = "security"

    def __init__(self) -> None:
        super().__init__("current password is incorrect")


# repository boundary


class EmailAlreadyExistsError(AccountError):
    error_code = "EMAIL_ALREADY_EXISTS"
    category = "conflict"

    def __init__(self, email: str, tenant_id: str) -> None:
        super().__init__("email is already registered in this tenant", tenant_id=tenant_id)
        self.email = email
        self.tenant_id = tenant_id


class UsernameAlreadyExistsError(AccountError):
    error_code = "USERNAME_ALREADY_EXISTS"
    category = "conflict"

    def __init__(self, username: str, tenant_id: str) -> None:
        super().__init__("username is already taken in this tenant", tenant_id=tenant_id)
        self.username = username
        self.tenant_id = tenant_id


class ConcurrentModificationError(AccountError):
    error_code = "CONCURRENT_MODIFICATION"
    category = "conflict"

    def __init__(self, account_id: str, expected_version: int) -> None:
        super().__init__(
            "account was modified concurrently",
            account_id=account_id,
            expected_version=expected_version,
        )
        self.account_id = account_id
        self.expected_version = expected_version


class AccountNotFoundError(AccountError):
    error_code = "ACCOUNT_NOT_FOUND"
    category = "not_found"

    def __init__(self, account_id: str, tenant_id: str) -> None:
        super().__init__("account not found", account_id=account_id)
        self.account_id = account_id
        self.tenant_id = tenant_id


# integrity


class CredentialCorruptedError(AccountError):
    """Stored password hash could not be parsed; indicates upstream data corruption."""

    error_code = "CREDENTIAL_CORRUPTED"
    category = "integrity"
    fatal = True

    def __init__(self) -> None:
        super().__init__("stored credential is malformed")
