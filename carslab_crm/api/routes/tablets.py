from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlmodel import Session

from carslab_crm.api.deps import get_current_active_user, get_current_tablet, get_db, require_roles
from carslab_crm.models.tablet import DeviceStatus, TabletDevice
from carslab_crm.models.user import User, UserRole
from carslab_crm.schemas.tablet import (
    HeartbeatRequest,
    HeartbeatResponse,
    PairingCodeResponse,
    TabletCredentials,
    TabletDeviceRead,
    TabletList,
    TabletPairingRequest,
    TabletRegistrationRequest,
    TabletStatsResponse,
)
from carslab_crm.services.tablet import TabletManagementService, TabletPairingService, tablet_to_read

router = APIRouter(prefix="/tablets", tags=["tablets"])


@router.post("/register", response_model=PairingCodeResponse, status_code=status.HTTP_201_CREATED)
def initiate_registration(
    payload: TabletRegistrationRequest,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.MANAGER)),
) -> PairingCodeResponse:
    pairing = TabletPairingService(session).initiate_registration(current_user.company_id, current_user, payload)
    expires_in = max(int((pairing.expires_at - datetime.utcnow()).total_seconds()), 0)
    return PairingCodeResponse(code=pairing.code, expires_at=pairing.expires_at, expires_in=expires_in)


@router.post("/pair", response_model=TabletCredentials)
def complete_pairing(payload: TabletPairingRequest, session: Session = Depends(get_db)) -> TabletCredentials:
    return TabletPairingService(session).complete_pairing(payload)


@router.get("", response_model=TabletList)
def list_tablets(
    status_filter: Optional[DeviceStatus] = Query(default=None, alias="status"),
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> TabletList:
    tablets = TabletManagementService(session).list_tablets(current_user.company_id, status_filter)
    now = datetime.utcnow()
    return TabletList(items=[tablet_to_read(tablet, now) for tablet in tablets], total=len(tablets))


@router.get("/stats", response_model=TabletStatsResponse)
def tablet_stats(
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> TabletStatsResponse:
    return TabletManagementService(session).tablet_stats(current_user.company_id)


@router.post("/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    payload: HeartbeatRequest,
    session: Session = Depends(get_db),
    tablet: TabletDevice = Depends(get_current_tablet),
) -> HeartbeatResponse:
    return TabletManagementService(session).heartbeat(tablet, payload.device_info)


@router.get("/{tablet_id}", response_model=TabletDeviceRead)
def get_tablet(
    tablet_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> TabletDeviceRead:
    tablet = TabletManagementService(session).get_tablet(current_user.company_id, tablet_id)
    return tablet_to_read(tablet)


@router.post("/{tablet_id}/disconnect", response_model=TabletDeviceRead)
def disconnect_tablet(
    tablet_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.MANAGER)),
) -> TabletDeviceRead:
    tablet = TabletManagementService(session).disconnect_tablet(current_user.company_id, tablet_id, current_user.id)
    return tablet_to_read(tablet)


@router.delete("/{tablet_id}", status_code=status.HTTP_204_NO_CONTENT)
def unpair_tablet(
    tablet_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.MANAGER)),
) -> Response:
    TabletManagementService(session).unpair_tablet(current_user.company_id, tablet_id, current_user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
