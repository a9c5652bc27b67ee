from typing import Annotated, Callable
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import Session, select

from carslab_crm.core.config import settings
from carslab_crm.core.exceptions import UnauthorizedTabletException
from carslab_crm.db.session import get_session
from carslab_crm.models.tablet import TabletDevice
from carslab_crm.models.user import User, UserRole
from carslab_crm.utils.security import TokenType, decode_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.api_prefix}/auth/login")


def get_db() -> Session:
    yield from get_session()


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
    session: Annotated[Session, Depends(get_db)],
) -> User:
    try:
        payload = decode_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    if payload.get("token_type") != TokenType.ACCESS.value:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    try:
        user_id = UUID(str(payload["sub"]))
    except (ValueError, TypeError, KeyError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token subject") from exc

    user = session.exec(select(User).where(User.id == user_id)).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    return user


def get_current_active_user(current_user: Annotated[User, Depends(get_current_user)]) -> User:
    if not current_user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User inactive")
    return current_user


def require_roles(*roles: UserRole) -> Callable[[User], User]:
    allowed = {role.value for role in roles}

    def dependency(current_user: Annotated[User, Depends(get_current_active_user)]) -> User:
        if current_user.role == UserRole.OWNER.value:
            return current_user
        if current_user.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return current_user

    return dependency


def authenticate_tablet(token: str, session: Session) -> TabletDevice:
    """Resolve a tablet access token to its device; shared by HTTP and websocket routes."""
    try:
        payload = decode_token(token)
    except ValueError as exc:
        raise UnauthorizedTabletException("Invalid tablet token") from exc

    if payload.get("token_type") != TokenType.TABLET.value:
        raise UnauthorizedTabletException("Invalid tablet token")

    try:
        tablet_id = UUID(str(payload["sub"]))
    except (ValueError, TypeError, KeyError) as exc:
        raise UnauthorizedTabletException("Invalid tablet token subject") from exc

    tablet = session.get(TabletDevice, tablet_id)
    if not tablet or str(tablet.company_id) != str(payload.get("company_id")):
        raise UnauthorizedTabletException("Tablet not registered")
    return tablet


def get_current_tablet(
    token: Annotated[str, Depends(oauth2_scheme)],
    session: Annotated[Session, Depends(get_db)],
) -> TabletDevice:
    return authenticate_tablet(token, session)
