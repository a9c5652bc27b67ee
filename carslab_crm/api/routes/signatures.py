import base64
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlmodel import Session

from carslab_crm.api.deps import client_ip, get_current_active_user, get_current_tablet, get_db, require_roles
from carslab_crm.core.config import settings
from carslab_crm.core.exceptions import RateLimitExceededException
from carslab_crm.models.signature import SignatureStatus
from carslab_crm.models.tablet import TabletDevice
from carslab_crm.models.user import User, UserRole
from carslab_crm.schemas.signature import (
    CancelSessionRequest,
    CreateSignatureSessionRequest,
    ExpireSessionsResponse,
    SignatureActionResponse,
    SignatureImageRead,
    SignatureSessionList,
    SignatureSessionRead,
    SignatureSubmission,
)
from carslab_crm.services.rate_limit import rate_limiter
from carslab_crm.services.signature import SignatureService

router = APIRouter(prefix="/signatures", tags=["signatures"])


def _service(session: Session) -> SignatureService:
    return SignatureService(session)


@router.post("/request", response_model=SignatureActionResponse, status_code=status.HTTP_201_CREATED)
def request_signature(
    payload: CreateSignatureSessionRequest,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SignatureActionResponse:
    allowed = rate_limiter.is_allowed(
        f"signature_request:{current_user.company_id}",
        settings.signature_request_rate_limit,
        settings.signature_request_rate_window_seconds,
    )
    if not allowed:
        raise RateLimitExceededException("Too many signature requests, try again later")

    signature_session = _service(session).request_signature(current_user.company_id, current_user, payload)
    return SignatureActionResponse(
        session_id=signature_session.id,
        status=signature_session.status,
        message="Signature request sent to tablet",
        expires_at=signature_session.expires_at,
    )


@router.get("", response_model=SignatureSessionList)
def list_sessions(
    status_filter: Optional[SignatureStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SignatureSessionList:
    items, total = _service(session).list_company_sessions(current_user.company_id, status_filter, page, page_size)
    return SignatureSessionList(
        items=[SignatureSessionRead.from_session(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/tablet/pending", response_model=list[SignatureSessionRead])
def pending_for_tablet(
    session: Session = Depends(get_db),
    tablet: TabletDevice = Depends(get_current_tablet),
) -> list[SignatureSessionRead]:
    return [SignatureSessionRead.from_session(item) for item in _service(session).pending_for_tablet(tablet)]


@router.post("/maintenance/expire", response_model=ExpireSessionsResponse)
def expire_sessions(
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.ADMIN)),
) -> ExpireSessionsResponse:
    return ExpireSessionsResponse(expired=_service(session).expire_stale_sessions(company_id=current_user.company_id))


@router.post("", response_model=SignatureActionResponse)
def submit_signature(
    payload: SignatureSubmission,
    request: Request,
    session: Session = Depends(get_db),
    tablet: TabletDevice = Depends(get_current_tablet),
) -> SignatureActionResponse:
    signature_session = _service(session).submit_signature(tablet, payload, client_ip(request))
    return SignatureActionResponse(
        session_id=signature_session.id,
        status=signature_session.status,
        message="Signature submitted successfully",
        signed_at=signature_session.signed_at,
    )


@router.get("/{session_id}", response_model=SignatureSessionRead)
def get_session(
    session_id: UUID,
    request: Request,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SignatureSessionRead:
    signature_session = _service(session).get_company_session(
        current_user.company_id, session_id, current_user.id, client_ip(request)
    )
    return SignatureSessionRead.from_session(signature_session)


@router.get("/{session_id}/image", response_model=SignatureImageRead)
def get_signature_image(
    session_id: UUID,
    request: Request,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SignatureImageRead:
    service = _service(session)
    signature_session = service.get_company_session(
        current_user.company_id, session_id, current_user.id, client_ip(request)
    )
    data, content_type = service.load_signature_image(signature_session)
    return SignatureImageRead(
        session_id=signature_session.id,
        signature_image=f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}",
        signed_at=signature_session.signed_at,
    )


def _cancel(
    session: Session,
    session_id: UUID,
    current_user: User,
    reason: str | None,
    ip_address: str | None,
) -> SignatureActionResponse:
    signature_session = _service(session).cancel_session(
        current_user.company_id,
        session_id,
        cancelled_by=current_user.email,
        reason=reason,
        user_id=current_user.id,
        ip_address=ip_address,
    )
    return SignatureActionResponse(
        session_id=signature_session.id,
        status=signature_session.status,
        message="Signature session cancelled",
    )


@router.post("/{session_id}/cancel", response_model=SignatureActionResponse)
def cancel_session(
    session_id: UUID,
    request: Request,
    payload: CancelSessionRequest | None = None,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.MANAGER)),
) -> SignatureActionResponse:
    return _cancel(session, session_id, current_user, payload.reason if payload else None, client_ip(request))


@router.delete("/{session_id}", response_model=SignatureActionResponse)
def delete_session(
    session_id: UUID,
    request: Request,
    reason: Optional[str] = None,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.ADMIN, UserRole.MANAGER)),
) -> SignatureActionResponse:
    return _cancel(session, session_id, current_user, reason, client_ip(request))


@router.post("/{session_id}/viewing", response_model=SignatureActionResponse)
def mark_viewing(
    session_id: UUID,
    request: Request,
    session: Session = Depends(get_db),
    tablet: TabletDevice = Depends(get_current_tablet),
) -> SignatureActionResponse:
    signature_session = _service(session).mark_viewing(tablet, session_id, client_ip(request))
    return SignatureActionResponse(
        session_id=signature_session.id,
        status=signature_session.status,
        message="Document opened on tablet",
        expires_at=signature_session.expires_at,
    )


@router.post("/{session_id}/signing", response_model=SignatureActionResponse)
def start_signing(
    session_id: UUID,
    request: Request,
    session: Session = Depends(get_db),
    tablet: TabletDevice = Depends(get_current_tablet),
) -> SignatureActionResponse:
    signature_session = _service(session).start_signing(tablet, session_id, client_ip(request))
    return SignatureActionResponse(
        session_id=signature_session.id,
        status=signature_session.status,
        message="Customer started signing",
        expires_at=signature_session.expires_at,
    )
