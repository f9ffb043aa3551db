"""Account service orchestrating persistence, lockout accounting, and auditing."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime
import json
import logging
from typing import Callable, Optional, Tuple, TypeVar

from .account import Account, ResetType, normalize_email, normalize_username
from .contracts import AccountRepository, AuditSink, CreateAccountInput, ProfileUpdate
from .credential import Credential
from .errors import (
    AccountNotFoundError,
    ConcurrentModificationError,
    EmailAlreadyExistsError,
    UsernameAlreadyExistsError,
)
from .events import AccountLocked, AccountStatusChanged
from .policy import LockoutPolicy, PasswordPolicy
from .status import AccountStatusType

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stand-in hash checked when a login names no account, so both paths pay the bcrypt cost.
_DUMMY_SECRET = "Dummy-Secret-0!"

# Statuses that may hold a valid credential but must not sign in.
_LOGIN_REFUSED = frozenset(
    {AccountStatusType.pending, AccountStatusType.inactive, AccountStatusType.suspended}
)


class AccountService:
    """Command handlers for the account aggregate.

    Each mutating call loads the aggregate by ``(account_id, tenant_id)``,
    invokes one aggregate operation, saves it with an optimistic version check
    and only then forwards the drained events to the audit sink. A version
    conflict reloads and replays the whole cycle, so concurrent failed logins
    are never lost.
    """

    def __init__(
        self,
        repository: AccountRepository,
        audit_sink: AuditSink,
        *,
        lockout_policy: LockoutPolicy | None = None,
        password_policy: PasswordPolicy | None = None,
        retry_attempts: int = 3,
    ) -> None:
        self._repository = repository
        self._audit_sink = audit_sink
        self._lockout_policy = lockout_policy or LockoutPolicy()
        self._password_policy = password_policy or PasswordPolicy()
        self._retry_attempts = max(1, retry_attempts)
        self._dummy_credential: Credential | None = None

    # registration and lookup

    def register(self, payload: CreateAccountInput, actor: str | None = None) -> Account:
        """Create a pending account after checking natural-key uniqueness.

        The pre-check gives a fast, friendly failure; the storage constraint
        enforced by ``repository.save`` is what closes the race between
        concurrent registrations.
        """
        email = normalize_email(payload.email)
        username = normalize_username(payload.username)
        if self._repository.exists_by_email(email, payload.tenant_id):
            raise EmailAlreadyExistsError(email, payload.tenant_id)
        if self._repository.exists_by_username(username, payload.tenant_id):
            raise UsernameAlreadyExistsError(username, payload.tenant_id)

        credential = Credential.create(payload.password, self._password_policy)
        account = Account.create(
            email=email,
            username=username,
            credential=credential,
            tenant_id=payload.tenant_id,
            first_name=payload.first_name,
            last_name=payload.last_name,
            avatar=payload.avatar,
            phone_number=payload.phone_number,
        )
        try:
            saved = self._repository.save(account)
        except (EmailAlreadyExistsError, UsernameAlreadyExistsError) as exc:
            logger.info("registration lost uniqueness race tenant=%s code=%s", payload.tenant_id, exc.error_code)
            raise
        self._audit_sink.publish(account.pull_events(), actor)
        logger.info("account created account=%s tenant=%s", saved.account_id, saved.tenant_id)
        return saved

    def get_account(self, account_id: str, tenant_id: str) -> Account | None:
        """Retrieve an account by identifier ensuring the tenant scope matches."""
        return self._repository.find_by_id(account_id, tenant_id)

    def require_account(self, account_id: str, tenant_id: str) -> Account:
        account = self._repository.find_by_id(account_id, tenant_id)
        if account is None:
            raise AccountNotFoundError(account_id, tenant_id)
        return account

    # lifecycle

    def activate(self, account_id: str, tenant_id: str, actor: str | None = None) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.activate(), actor)[0]

    def deactivate(
        self, account_id: str, tenant_id: str, reason: str | None = None, actor: str | None = None
    ) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.deactivate(reason), actor)[0]

    def suspend(
        self, account_id: str, tenant_id: str, reason: str | None = None, actor: str | None = None
    ) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.suspend(reason), actor)[0]

    def restore(
        self, account_id: str, tenant_id: str, reason: str | None = None, actor: str | None = None
    ) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.restore(reason), actor)[0]

    def lock(
        self,
        account_id: str,
        tenant_id: str,
        reason: str | None = None,
        until: datetime | None = None,
        actor: str | None = None,
    ) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.lock(reason, until), actor)[0]

    def unlock(self, account_id: str, tenant_id: str, actor: str | None = None) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.unlock(), actor)[0]

    def delete(
        self, account_id: str, tenant_id: str, reason: str | None = None, actor: str | None = None
    ) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.delete(reason), actor)[0]

    # authentication

    def verify_password(self, account_id: str, tenant_id: str, plaintext: str) -> bool:
        """Run the aggregate password check and persist the attempt accounting."""
        _, matched = self._mutate(
            account_id,
            tenant_id,
            lambda account: account.verify_password(plaintext, self._lockout_policy),
        )
        return matched

    def authenticate(self, tenant_id: str, identifier: str, plaintext: str) -> Account | None:
        """Check a login by email or username.

        Returns the account on success and ``None`` when no account matches,
        when the password is wrong, and when the account is pending, inactive
        or suspended, so callers cannot tell these apart. Refused accounts are
        checked without touching their login accounting. Locked and deleted
        accounts raise their domain errors.
        """
        found = self._repository.find_by_login(identifier.strip().lower(), tenant_id)
        if found is None:
            self._dummy().verify(plaintext)
            return None
        if found.status.value in _LOGIN_REFUSED:
            found.credential.verify(plaintext)
            logger.info(
                "login refused for %s account=%s tenant=%s", found.status, found.account_id, tenant_id
            )
            return None
        saved, matched = self._mutate(
            found.account_id,
            tenant_id,
            lambda account: account.verify_password(plaintext, self._lockout_policy),
            preloaded=found,
        )
        return saved if matched else None

    def change_password(
        self, account_id: str, tenant_id: str, current_password: str, new_password: str
    ) -> Account:
        credential = Credential.create(new_password, self._password_policy)
        return self._mutate(
            account_id,
            tenant_id,
            lambda account: account.change_password(current_password, credential),
        )[0]

    def reset_password(
        self,
        account_id: str,
        tenant_id: str,
        new_password: str,
        reset_type: ResetType = "admin_reset",
        actor: str | None = None,
    ) -> Account:
        credential = Credential.create(new_password, self._password_policy)
        return self._mutate(
            account_id,
            tenant_id,
            lambda account: account.reset_password(credential, reset_type),
            actor,
        )[0]

    # profile

    def update_profile(self, account_id: str, tenant_id: str, update: ProfileUpdate) -> Account:
        return self._mutate(
            account_id,
            tenant_id,
            lambda account: account.update_profile(
                first_name=update.first_name,
                last_name=update.last_name,
                avatar=update.avatar,
                phone_number=update.phone_number,
            ),
        )[0]

    def verify_email(self, account_id: str, tenant_id: str) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.verify_email())[0]

    def verify_phone(self, account_id: str, tenant_id: str) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.verify_phone())[0]

    def enable_two_factor(self, account_id: str, tenant_id: str, secret: str) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.enable_two_factor(secret))[0]

    def disable_two_factor(self, account_id: str, tenant_id: str) -> Account:
        return self._mutate(account_id, tenant_id, lambda account: account.disable_two_factor())[0]

    # audit log

    def list_audit_events(
        self,
        *,
        tenant_id: str,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list, str | None]:
        """Return audit log records for the tenant with optional filters and cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._repository.list_audit_events(
            tenant_id=tenant_id,
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    # internals

    def _mutate(
        self,
        account_id: str,
        tenant_id: str,
        operation: Callable[[Account], T],
        actor: str | None = None,
        preloaded: Account | None = None,
    ) -> tuple[Account, T]:
        """Load, apply ``operation``, save and publish; retry on version conflicts."""
        for attempt in range(1, self._retry_attempts + 1):
            if preloaded is not None and attempt == 1:
                account = preloaded
            else:
                account = self.require_account(account_id, tenant_id)
            result = operation(account)
            try:
                saved = self._repository.save(account)
            except ConcurrentModificationError:
                if attempt == self._retry_attempts:
                    raise
                logger.warning(
                    "concurrent update on account=%s tenant=%s, retrying (%d/%d)",
                    account_id,
                    tenant_id,
                    attempt,
                    self._retry_attempts,
                )
                continue
            events = account.pull_events()
            for event in events:
                if isinstance(event, AccountLocked) and event.login_attempts >= self._lockout_policy.max_attempts:
                    logger.warning(
                        "account locked after %d failed logins account=%s tenant=%s",
                        event.login_attempts,
                        account_id,
                        tenant_id,
                    )
                elif isinstance(event, AccountStatusChanged) and event.reason == "Lock expired":
                    logger.info("lock expired account=%s tenant=%s", account_id, tenant_id)
            self._audit_sink.publish(events, actor)
            return saved, result
        raise AssertionError("unreachable")

    def _dummy(self) -> Credential:
        if self._dummy_credential is None:
            policy = PasswordPolicy(
                min_length=1,
                max_length=len(_DUMMY_SECRET),
                bcrypt_rounds=self._password_policy.bcrypt_rounds,
                deny_list=frozenset(),
            )
            self._dummy_credential = Credential.create(_DUMMY_SECRET, policy)
        return self._dummy_credential

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except Exception as exc:
            raise ValueError("invalid cursor") from exc
