from __future__ import annotations

from enum import Enum
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from carslab_crm.models.base import TimestampedModel, UUIDModel


class AuditSeverity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditLog(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "audit_logs"

    company_id: UUID | None = Field(default=None, index=True)
    user_id: UUID | None = Field(default=None, index=True)
    action: str = Field(index=True, max_length=50)
    resource: str = Field(max_length=100)
    resource_id: str | None = Field(default=None, index=True, max_length=100)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)
    ip_address: str | None = Field(default=None, max_length=45)
    user_agent: str | None = Field(default=None, max_length=200)
    severity: AuditSeverity = Field(default=AuditSeverity.INFO)


class AuthLog(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "auth_logs"

    user_id: UUID | None = Field(default=None, foreign_key="users.id", index=True)
    event_type: str = Field(index=True)
    ip_address: str | None = Field(default=None)
    user_agent: str | None = Field(default=None)
    success: bool = Field(default=True)
