from datetime import datetime
from uuid import UUID

from sqlmodel import Session, select

from carslab_crm.models.company import Company
from carslab_crm.models.user import User, UserRole
from carslab_crm.schemas.auth import LoginRequest, RefreshRequest, RegisterRequest, Token
from carslab_crm.utils.security import (
    TokenType,
    create_access_token,
    create_refresh_token,
    decode_token,
    get_password_hash,
    verify_password,
)


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register_company(self, payload: RegisterRequest) -> tuple[User, Token]:
        existing = self.session.exec(select(Company).where(Company.slug == payload.company_slug)).first()
        if existing:
            raise ValueError("Company already exists")

        existing_user = self.session.exec(select(User).where(User.email == payload.admin_email)).first()
        if existing_user:
            raise ValueError("User already exists")

        company = Company(name=payload.company_name, slug=payload.company_slug, tax_id=payload.tax_id)
        self.session.add(company)
        self.session.flush()

        admin_user = User(
            company_id=company.id,
            email=payload.admin_email,
            full_name=payload.admin_full_name,
            password_hash=get_password_hash(payload.admin_password),
            role=UserRole.ADMIN.value,
        )
        self.session.add(admin_user)
        self.session.commit()
        self.session.refresh(admin_user)

        return admin_user, self._build_tokens(admin_user)

    def authenticate(self, payload: LoginRequest) -> tuple[User, Token]:
        statement = select(User).where(User.email == payload.username)
        user = self.session.exec(statement).first()

        if not user or not user.is_active:
            raise ValueError("Invalid credentials")

        if not verify_password(payload.password, user.password_hash):
            raise ValueError("Invalid credentials")

        user.last_login_at = datetime.utcnow()
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)

        return user, self._build_tokens(user)

    def refresh(self, payload: RefreshRequest) -> Token:
        token_data = decode_token(payload.refresh_token)
        if token_data.get("token_type") != TokenType.REFRESH.value:
            raise ValueError("Invalid token type")

        try:
            user_id = UUID(str(token_data.get("sub")))
        except ValueError as exc:
            raise ValueError("Invalid token subject") from exc

        user = self.session.get(User, user_id)
        if not user or not user.is_active:
            raise ValueError("Invalid token")

        return self._build_tokens(user)

    def _build_tokens(self, user: User) -> Token:
        access_token = create_access_token(str(user.id), str(user.company_id), {"role": user.role})
        refresh_token = create_refresh_token(str(user.id), str(user.company_id))
        return Token(
            access_token=access_token,
            refresh_token=refresh_token,
            company_id=str(user.company_id),
            role=user.role,
        )
