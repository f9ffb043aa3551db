"""Audit event envelope published by the identity service."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class AccountAuditEvent(BaseModel):
    event_type: str
    account_id: str
    tenant_id: str
    occurred_at: datetime
    actor: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: str = "v1"
