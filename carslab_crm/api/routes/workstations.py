from typing import List

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from carslab_crm.api.deps import get_current_active_user, get_db, require_roles
from carslab_crm.models.user import User, UserRole
from carslab_crm.schemas.tablet import WorkstationCreate, WorkstationRead
from carslab_crm.services.tablet import TabletManagementService

router = APIRouter(prefix="/workstations", tags=["workstations"])


@router.post("", response_model=WorkstationRead, status_code=status.HTTP_201_CREATED)
def create_workstation(
    payload: WorkstationCreate,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.MANAGER)),
) -> WorkstationRead:
    workstation = TabletManagementService(session).create_workstation(
        current_user.company_id, payload, current_user.id
    )
    return WorkstationRead.model_validate(workstation)


@router.get("", response_model=List[WorkstationRead])
def list_workstations(
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> List[WorkstationRead]:
    workstations = TabletManagementService(session).list_workstations(current_user.company_id)
    return [WorkstationRead.model_validate(item) for item in workstations]
