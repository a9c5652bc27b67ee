from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlmodel import Session

from carslab_crm.api.deps import get_current_active_user, get_db
from carslab_crm.core.config import settings
from carslab_crm.core.exceptions import RateLimitExceededException
from carslab_crm.models.user import User
from carslab_crm.schemas.invoice_signature import (
    InvoiceSignatureRequest,
    InvoiceSignatureResponse,
    InvoiceSignatureStatusResponse,
)
from carslab_crm.schemas.signature import CancelSessionRequest, SignatureActionResponse
from carslab_crm.services.invoice_signature import InvoiceSignatureService
from carslab_crm.services.rate_limit import rate_limiter

router = APIRouter(prefix="/invoice-signatures", tags=["invoice-signatures"])


def _service(session: Session) -> InvoiceSignatureService:
    return InvoiceSignatureService(session)


@router.post("/request", response_model=InvoiceSignatureResponse, status_code=status.HTTP_201_CREATED)
def request_invoice_signature(
    payload: InvoiceSignatureRequest,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> InvoiceSignatureResponse:
    allowed = rate_limiter.is_allowed(
        f"signature_request:{current_user.company_id}",
        settings.signature_request_rate_limit,
        settings.signature_request_rate_window_seconds,
    )
    if not allowed:
        raise RateLimitExceededException("Too many signature requests, try again later")

    signature_session, totals = _service(session).request(current_user.company_id, current_user, payload)
    return InvoiceSignatureResponse(
        session_id=signature_session.id,
        invoice_id=payload.invoice_id,
        status=signature_session.status,
        message="Invoice sent to tablet for signature",
        expires_at=signature_session.expires_at,
        totals=totals,
    )


@router.get("/sessions/{session_id}/status", response_model=InvoiceSignatureStatusResponse)
def invoice_signature_status(
    session_id: UUID,
    invoice_id: str = Query(min_length=1),
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> InvoiceSignatureStatusResponse:
    return _service(session).status(current_user.company_id, session_id, invoice_id)


@router.post("/sessions/{session_id}/cancel", response_model=SignatureActionResponse)
def cancel_invoice_signature(
    session_id: UUID,
    invoice_id: str = Query(min_length=1),
    payload: CancelSessionRequest | None = None,
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SignatureActionResponse:
    signature_session = _service(session).cancel(
        current_user.company_id,
        session_id,
        invoice_id,
        current_user,
        payload.reason if payload else None,
    )
    return SignatureActionResponse(
        session_id=signature_session.id,
        status=signature_session.status,
        message="Invoice signature session cancelled",
    )


@router.get("/sessions/{session_id}/signature-image")
def invoice_signature_image(
    session_id: UUID,
    invoice_id: str = Query(min_length=1),
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> Response:
    data, content_type = _service(session).signature_image(current_user.company_id, session_id, invoice_id)
    extension = "png" if content_type == "image/png" else "jpg"
    return Response(
        content=data,
        media_type=content_type,
        headers={"Content-Disposition": f'inline; filename="signature-{session_id}.{extension}"'},
    )


@router.get("/sessions/{session_id}/signed-document")
def invoice_signed_document(
    session_id: UUID,
    invoice_id: str = Query(min_length=1),
    session: Session = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> dict[str, Any]:
    return _service(session).signed_document(current_user.company_id, session_id, invoice_id)
