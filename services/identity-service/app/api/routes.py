"""HTTP route definitions for the identity service."""

from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from schemas import Account as AccountSchema

from ..config import get_settings
from ..domain.account import Account
from ..domain.contracts import CreateAccountInput, ProfileUpdate
from ..domain.errors import (
    AccountDeletedError,
    AccountError,
    AccountLockedError,
    IncorrectCurrentPasswordError,
)
from ..domain.service import AccountService
from ..security.throttle import Throttle, build_throttle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class AccountResponse(AccountSchema):
    """Serialised representation of an `Account` aggregate."""

    first_name: str | None = None
    last_name: str | None = None
    display_name: str
    avatar: str | None = None
    phone_number: str | None = None
    password_changed_at: datetime | None = None
    deleted_at: datetime | None = None

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain aggregate."""
        return cls(
            account_id=account.account_id,
            tenant_id=account.tenant_id,
            email=account.email,
            username=account.username,
            status=account.status.value.value,
            email_verified=account.email_verified,
            phone_verified=account.phone_verified,
            two_factor_enabled=account.two_factor_enabled,
            login_attempts=account.login_attempts,
            locked_until=account.locked_until,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
            updated_at=account.updated_at,
            first_name=account.first_name,
            last_name=account.last_name,
            display_name=account.display_name,
            avatar=account.avatar,
            phone_number=account.phone_number,
            password_changed_at=account.password_changed_at,
            deleted_at=account.deleted_at,
        )


class CreateAccountRequest(BaseModel):
    """Payload accepted when registering a tenant-scoped account."""

    tenant_id: str
    email: str
    username: str
    password: str
    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None
    phone_number: str | None = None


class ReasonRequest(BaseModel):
    reason: str | None = None


class LockRequest(BaseModel):
    reason: str | None = None
    until: datetime | None = None


class LoginRequest(BaseModel):
    """Credentials submitted to the login check."""

    tenant_id: str
    identifier: str = Field(..., description="Email address or username")
    password: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class ResetPasswordRequest(BaseModel):
    new_password: str
    reset_type: Literal["admin_reset", "forgot_password"] = "admin_reset"


class UpdateProfileRequest(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    avatar: str | None = None
    phone_number: str | None = None


class EnableTwoFactorRequest(BaseModel):
    secret: str


class AuditLogEntry(BaseModel):
    """Audit log response entry."""

    audit_id: int
    account_id: str | None
    tenant_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AuditLogEntry]
    next_cursor: str | None = None


settings = get_settings()

throttle: Throttle = build_throttle(settings)

_STATUS_BY_CATEGORY = {
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "state": status.HTTP_409_CONFLICT,
    "conflict": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "security": status.HTTP_403_FORBIDDEN,
}

_INVALID_CREDENTIALS = {"error_code": "INVALID_CREDENTIALS", "message": "invalid credentials"}


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def _http_error(exc: AccountError) -> HTTPException:
    if exc.fatal:
        logger.exception("fatal account error %s", exc.error_code)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": exc.error_code, "message": "internal error"},
        )
    if isinstance(exc, AccountLockedError):
        return HTTPException(status_code=status.HTTP_423_LOCKED, detail=exc.to_dict())
    if isinstance(exc, IncorrectCurrentPasswordError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=exc.to_dict())
    status_code = _STATUS_BY_CATEGORY.get(exc.category, status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=status_code, detail=exc.to_dict())


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except AccountError as exc:
        raise _http_error(exc) from exc


def _throttled(key: str) -> None:
    if not throttle.allow(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: CreateAccountRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Register a pending account in the payload tenant."""
    _throttled(f"create:{payload.tenant_id}")
    with _domain_errors():
        account = service.register(
            CreateAccountInput(
                tenant_id=payload.tenant_id,
                email=payload.email,
                username=payload.username,
                password=payload.password,
                first_name=payload.first_name,
                last_name=payload.last_name,
                avatar=payload.avatar,
                phone_number=payload.phone_number,
            )
        )
    return AccountResponse.from_domain(account)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Retrieve an account belonging to the requester tenant."""
    account = service.get_account(account_id, tenant_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="account not found")
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/activate", response_model=AccountResponse)
def activate_account(
    account_id: str,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    actor: str | None = Header(default=None, alias="X-Actor-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.activate(account_id, tenant_id, actor=actor)
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/deactivate", response_model=AccountResponse)
def deactivate_account(
    account_id: str,
    payload: ReasonRequest,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    actor: str | None = Header(default=None, alias="X-Actor-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.deactivate(account_id, tenant_id, payload.reason, actor=actor)
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/suspend", response_model=AccountResponse)
def suspend_account(
    account_id: str,
    payload: ReasonRequest,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    actor: str | None = Header(default=None, alias="X-Actor-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.suspend(account_id, tenant_id, payload.reason, actor=actor)
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/restore", response_model=AccountResponse)
def restore_account(
    account_id: str,
    payload: ReasonRequest,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    actor: str | None = Header(default=None, alias="X-Actor-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.restore(account_id, tenant_id, payload.reason, actor=actor)
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/lock", response_model=AccountResponse)
def lock_account(
    account_id: str,
    payload: LockRequest,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    actor: str | None = Header(default=None, alias="X-Actor-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.lock(account_id, tenant_id, payload.reason, payload.until, actor=actor)
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/unlock", response_model=AccountResponse)
def unlock_account(
    account_id: str,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    actor: str | None = Header(default=None, alias="X-Actor-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.unlock(account_id, tenant_id, actor=actor)
    return AccountResponse.from_domain(account)


@router.delete("/accounts/{account_id}", response_model=AccountResponse)
def delete_account(
    account_id: str,
    reason: str | None = Query(default=None),
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    actor: str | None = Header(default=None, alias="X-Actor-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Soft-delete an account; the record stays readable for audit purposes."""
    with _domain_errors():
        account = service.delete(account_id, tenant_id, reason, actor=actor)
    return AccountResponse.from_domain(account)


@router.post("/login", response_model=AccountResponse)
def login(
    payload: LoginRequest,
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    """Check credentials and update lockout accounting.

    Unknown identifiers, wrong passwords and deleted accounts share a single
    401 response. A locked account answers 423 with ``locked_until``.
    """
    digest = hashlib.sha256(payload.identifier.strip().lower().encode("utf-8")).hexdigest()[:16]
    rate_key = f"login:{payload.tenant_id}:{digest}"
    _throttled(rate_key)
    try:
        account = service.authenticate(payload.tenant_id, payload.identifier, payload.password)
    except AccountDeletedError:
        account = None
    except AccountError as exc:
        raise _http_error(exc) from exc
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=_INVALID_CREDENTIALS)
    throttle.reset(rate_key)
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/password", response_model=AccountResponse)
def change_password(
    account_id: str,
    payload: ChangePasswordRequest,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.change_password(
            account_id, tenant_id, payload.current_password, payload.new_password
        )
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/password/reset", response_model=AccountResponse)
def reset_password(
    account_id: str,
    payload: ResetPasswordRequest,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    actor: str | None = Header(default=None, alias="X-Actor-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.reset_password(
            account_id, tenant_id, payload.new_password, payload.reset_type, actor=actor
        )
    return AccountResponse.from_domain(account)


@router.patch("/accounts/{account_id}/profile", response_model=AccountResponse)
def update_profile(
    account_id: str,
    payload: UpdateProfileRequest,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.update_profile(
            account_id,
            tenant_id,
            ProfileUpdate(
                first_name=payload.first_name,
                last_name=payload.last_name,
                avatar=payload.avatar,
                phone_number=payload.phone_number,
            ),
        )
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/email/verify", response_model=AccountResponse)
def verify_email(
    account_id: str,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.verify_email(account_id, tenant_id)
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/phone/verify", response_model=AccountResponse)
def verify_phone(
    account_id: str,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.verify_phone(account_id, tenant_id)
    return AccountResponse.from_domain(account)


@router.post("/accounts/{account_id}/two-factor", response_model=AccountResponse)
def enable_two_factor(
    account_id: str,
    payload: EnableTwoFactorRequest,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.enable_two_factor(account_id, tenant_id, payload.secret)
    return AccountResponse.from_domain(account)


@router.delete("/accounts/{account_id}/two-factor", response_model=AccountResponse)
def disable_two_factor(
    account_id: str,
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    service: AccountService = Depends(get_service),
) -> AccountResponse:
    with _domain_errors():
        account = service.disable_two_factor(account_id, tenant_id)
    return AccountResponse.from_domain(account)


@router.get("/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    tenant_id: str = Header(..., alias="X-Tenant-ID"),
    account_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    service: AccountService = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated audit events for the tenant with optional filtering."""
    try:
        records, next_cursor = service.list_audit_events(
            tenant_id=tenant_id,
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    items = [
        AuditLogEntry(
            audit_id=record.audit_id,
            account_id=record.account_id,
            tenant_id=record.tenant_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)
