from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from carslab_crm.api.deps import get_db, require_roles
from carslab_crm.core.exceptions import EntityNotFoundException
from carslab_crm.models.audit import AuditSeverity
from carslab_crm.models.user import User, UserRole
from carslab_crm.schemas.audit import AuditEventList, AuditEventRead
from carslab_crm.services.audit import AuditService

router = APIRouter(prefix="/audit", tags=["audit"])


def _service(session: Session) -> AuditService:
    return AuditService(session)


@router.get("/events", response_model=AuditEventList)
def list_events(
    action: Optional[str] = None,
    resource_id: Optional[str] = None,
    severity: Optional[AuditSeverity] = None,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.MANAGER)),
) -> AuditEventList:
    service = _service(session)
    items, total = service.list_events(
        company_id=current_user.company_id,
        action=action,
        resource_id=resource_id,
        severity=severity,
        start_at=start_at,
        end_at=end_at,
        page=page,
        page_size=page_size,
    )
    return AuditEventList(
        items=[AuditEventRead.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/events/{event_id}", response_model=AuditEventRead)
def get_event(
    event_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.MANAGER)),
) -> AuditEventRead:
    log = _service(session).get_event(event_id)
    if not log or log.company_id != current_user.company_id:
        raise EntityNotFoundException("Audit log not found")
    return AuditEventRead.model_validate(log)
