"""Account-related DTOs shared across services."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pydantic import BaseModel, EmailStr


class AccountState(str, Enum):
    pending = "pending"
    active = "active"
    inactive = "inactive"
    locked = "locked"
    suspended = "suspended"
    deleted = "deleted"


class Account(BaseModel):
    account_id: str
    tenant_id: str
    email: EmailStr
    username: str
    status: AccountState
    email_verified: bool = False
    phone_verified: bool = False
    two_factor_enabled: bool = False
    login_attempts: int = 0
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    class Config:
        use_enum_values = True
