from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping
from uuid import uuid4
import base64
import secrets

from jose import JWTError, jwt
from passlib.context import CryptContext

from carslab_crm.core.config import settings


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    TABLET = "tablet"


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _create_token(
    subject: str,
    company_id: str | None,
    expires_delta: timedelta,
    token_type: TokenType,
    extra_claims: Mapping[str, Any] | None = None,
) -> str:
    expire = datetime.utcnow() + expires_delta
    to_encode = {
        "sub": subject,
        "company_id": company_id,
        "exp": expire,
        "token_type": token_type.value,
        "jti": str(uuid4()),
    }
    if extra_claims:
        to_encode.update(extra_claims)
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def create_access_token(subject: str, company_id: str | None, extra_claims: Mapping[str, Any] | None = None) -> str:
    delta = timedelta(minutes=settings.access_token_expire_minutes)
    return _create_token(subject, company_id, delta, TokenType.ACCESS, extra_claims)


def create_refresh_token(subject: str, company_id: str | None, extra_claims: Mapping[str, Any] | None = None) -> str:
    delta = timedelta(minutes=settings.refresh_token_expire_minutes)
    return _create_token(subject, company_id, delta, TokenType.REFRESH, extra_claims)


def create_tablet_token(tablet_id: str, company_id: str) -> str:
    delta = timedelta(minutes=settings.tablet_token_expire_minutes)
    return _create_token(tablet_id, company_id, delta, TokenType.TABLET)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def decode_token(token: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    if "token_type" not in payload:
        raise ValueError("Invalid token payload")
    return payload


def generate_pairing_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


def generate_device_token() -> str:
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")
