from datetime import datetime
from typing import Any, List
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from carslab_crm.models.audit import AuditSeverity


class AuditEventRead(BaseModel):
    id: UUID
    created_at: datetime
    company_id: UUID | None
    user_id: UUID | None
    action: str
    resource: str
    resource_id: str | None
    ip_address: str | None
    user_agent: str | None
    severity: AuditSeverity
    details: dict[str, Any] | None

    model_config = ConfigDict(from_attributes=True)


class AuditEventList(BaseModel):
    items: List[AuditEventRead]
    total: int
    page: int
    page_size: int
