from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlmodel import Session

from carslab_crm.api.deps import client_ip, get_db
from carslab_crm.schemas.auth import LoginRequest, RefreshRequest, RegisterRequest, Token
from carslab_crm.services.audit import AuditService
from carslab_crm.services.auth import AuthService

router = APIRouter(prefix="/auth", tags=["auth"])


def _services(session: Session) -> tuple[AuthService, AuditService]:
    return AuthService(session), AuditService(session)


@router.post("/register", response_model=Token, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, session: Session = Depends(get_db)) -> Token:
    auth_service, audit_service = _services(session)
    try:
        user, token = auth_service.register_company(payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    audit_service.record(
        action="COMPANY_REGISTERED",
        resource="company",
        resource_id=str(user.company_id),
        company_id=user.company_id,
        user_id=user.id,
        details={"slug": payload.company_slug},
    )
    return token


@router.post("/login", response_model=Token)
def login(
    payload: LoginRequest,
    request: Request,
    session: Session = Depends(get_db),
) -> Token:
    auth_service, audit_service = _services(session)
    try:
        user, token = auth_service.authenticate(payload)
    except ValueError as exc:
        audit_service.record_auth(
            user_id=None,
            event_type="login",
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
            success=False,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    audit_service.record_auth(
        user_id=user.id,
        event_type="login",
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        success=True,
    )
    return token


@router.post("/refresh", response_model=Token)
def refresh(payload: RefreshRequest, session: Session = Depends(get_db)) -> Token:
    auth_service, _ = _services(session)
    try:
        return auth_service.refresh(payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
