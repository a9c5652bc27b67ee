from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field, SQLModel

from carslab_crm.models.base import TimestampedModel, UUIDModel


class DeviceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    MAINTENANCE = "MAINTENANCE"
    ERROR = "ERROR"


class Workstation(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "workstations"

    company_id: UUID = Field(foreign_key="companies.id", index=True)
    location_id: str | None = Field(default=None, max_length=64, index=True)
    name: str = Field(max_length=100)
    code: str | None = Field(default=None, max_length=50)
    paired_tablet_id: UUID | None = Field(default=None, index=True)
    is_active: bool = Field(default=True)


class TabletDevice(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "tablet_devices"

    company_id: UUID = Field(foreign_key="companies.id", index=True)
    location_id: str | None = Field(default=None, max_length=64, index=True)
    device_token: str = Field(unique=True, index=True, max_length=255)
    friendly_name: str = Field(max_length=100)
    workstation_id: UUID | None = Field(default=None, foreign_key="workstations.id")
    status: DeviceStatus = Field(default=DeviceStatus.ACTIVE, index=True)
    last_seen: datetime = Field(default_factory=datetime.utcnow, index=True)
    device_info: dict | None = Field(default=None, sa_type=JSON)

    def is_online(self, window_seconds: int, now: datetime | None = None) -> bool:
        reference = now or datetime.utcnow()
        return (reference - self.last_seen).total_seconds() <= window_seconds


class PairingCode(SQLModel, table=True):
    __tablename__ = "pairing_codes"

    code: str = Field(primary_key=True, max_length=10)
    company_id: UUID = Field(foreign_key="companies.id", index=True)
    location_id: str | None = Field(default=None, max_length=64)
    workstation_id: UUID | None = Field(default=None, foreign_key="workstations.id")
    device_name: str | None = Field(default=None, max_length=100)
    created_by_user_id: UUID | None = Field(default=None, foreign_key="users.id")
    expires_at: datetime = Field(index=True)
    used_at: datetime | None = Field(default=None)
    used_by_tablet_id: UUID | None = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    def is_valid(self, now: datetime | None = None) -> bool:
        reference = now or datetime.utcnow()
        return self.used_at is None and reference <= self.expires_at
