from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlmodel import Field, Relationship

from carslab_crm.models.base import TimestampedModel, UUIDModel
from carslab_crm.models.company import Company


class UserRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    USER = "user"


class User(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "users"

    company_id: UUID = Field(foreign_key="companies.id", index=True)

    email: str = Field(index=True, unique=True)
    full_name: str
    password_hash: str
    role: str = Field(default=UserRole.USER.value)
    is_active: bool = Field(default=True)
    last_login_at: datetime | None = Field(default=None)

    company: Company = Relationship(back_populates="users")
