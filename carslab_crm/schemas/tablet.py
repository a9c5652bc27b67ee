from datetime import datetime
from typing import Any, Dict, List
from uuid import UUID

from pydantic import BaseModel, Field

from carslab_crm.models.tablet import DeviceStatus
from carslab_crm.schemas.common import IDModel, Timestamped


class WorkstationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    code: str | None = Field(default=None, max_length=50)
    location_id: str | None = Field(default=None, max_length=64)


class WorkstationRead(IDModel, Timestamped):
    company_id: UUID
    location_id: str | None = None
    name: str
    code: str | None = None
    paired_tablet_id: UUID | None = None
    is_active: bool


class TabletRegistrationRequest(BaseModel):
    workstation_id: UUID | None = None
    location_id: str | None = Field(default=None, max_length=64)
    device_name: str | None = Field(default=None, max_length=100)


class PairingCodeResponse(BaseModel):
    code: str
    expires_at: datetime
    expires_in: int


class TabletPairingRequest(BaseModel):
    code: str = Field(pattern=r"^\d{6}$")
    device_name: str = Field(min_length=1, max_length=100)
    device_info: dict[str, Any] | None = None


class TabletCredentials(BaseModel):
    device_id: UUID
    device_token: str
    access_token: str
    websocket_url: str
    company_id: UUID
    location_id: str | None = None
    workstation_id: UUID | None = None


class TabletDeviceRead(IDModel, Timestamped):
    company_id: UUID
    location_id: str | None = None
    friendly_name: str
    workstation_id: UUID | None = None
    status: DeviceStatus
    last_seen: datetime
    device_info: dict[str, Any] | None = None
    is_online: bool = False


class TabletList(BaseModel):
    items: List[TabletDeviceRead]
    total: int


class HeartbeatRequest(BaseModel):
    device_info: dict[str, Any] | None = None


class HeartbeatResponse(BaseModel):
    device_id: UUID
    status: DeviceStatus
    last_seen: datetime
    pending_sessions: int


class TabletStatsResponse(BaseModel):
    total_tablets: int
    online_tablets: int
    offline_tablets: int
    active_tablets: int
    by_status: Dict[str, int]
    by_location: Dict[str, int]
    sessions_today: int
    sessions_this_week: int
    sessions_this_month: int
    active_pairing_codes: int
