"""Forward account domain events to the identity audit log."""

from __future__ import annotations

import logging
from typing import Any, Sequence

from typing_extensions import assert_never

from schemas import AccountAuditEvent

from .domain.contracts import AccountRepository
from .domain.events import (
    AccountActivated,
    AccountCreated,
    AccountEvent,
    AccountLocked,
    AccountStatusChanged,
    LoginFailed,
    LoginSucceeded,
    PasswordChanged,
)

logger = logging.getLogger(__name__)


def event_metadata(event: AccountEvent) -> dict[str, Any]:
    """Return the variant-specific payload of ``event`` as JSON-ready values."""
    match event:
        case AccountCreated(email=email, username=username):
            return {"email": email, "username": username}
        case AccountActivated():
            return {}
        case AccountLocked(reason=reason, locked_until=locked_until, login_attempts=attempts):
            return {
                "reason": reason,
                "locked_until": locked_until.isoformat() if locked_until else None,
                "login_attempts": attempts,
            }
        case AccountStatusChanged(from_status=from_status, to_status=to_status, reason=reason):
            return {"from_status": from_status, "to_status": to_status, "reason": reason}
        case PasswordChanged(change_type=change_type):
            return {"change_type": change_type}
        case LoginSucceeded():
            return {}
        case LoginFailed(login_attempts=attempts):
            return {"login_attempts": attempts}
        case _:
            assert_never(event)


def to_audit_event(event: AccountEvent, actor: str | None = None) -> AccountAuditEvent:
    return AccountAuditEvent(
        event_type=event.event_type,
        account_id=event.account_id,
        tenant_id=event.tenant_id,
        occurred_at=event.occurred_at,
        actor=actor,
        metadata=event_metadata(event),
    )


class RepositoryAuditSink:
    """Audit sink writing each event as a row in ``identity_audit_log``."""

    def __init__(self, repository: AccountRepository) -> None:
        self._repository = repository

    def publish(self, events: Sequence[AccountEvent], actor: str | None = None) -> None:
        for event in events:
            audit_event = to_audit_event(event, actor)
            self._repository.write_audit_event(
                account_id=audit_event.account_id,
                tenant_id=audit_event.tenant_id,
                event_type=audit_event.event_type,
                actor=audit_event.actor or audit_event.account_id,
                metadata=audit_event.metadata,
                created_at=audit_event.occurred_at,
            )
            if isinstance(event, (AccountLocked, LoginFailed)):
                logger.info(
                    "%s account=%s tenant=%s", event.event_type, event.account_id, event.tenant_id
                )
