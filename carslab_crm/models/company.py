from typing import List, TYPE_CHECKING

from sqlmodel import Field, Relationship

from carslab_crm.models.base import TimestampedModel, UUIDModel

if TYPE_CHECKING:  # pragma: no cover
    from carslab_crm.models.user import User


class Company(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "companies"

    name: str = Field(index=True)
    slug: str = Field(unique=True, index=True)
    tax_id: str | None = Field(default=None, max_length=20)
    is_active: bool = Field(default=True)

    users: List["User"] = Relationship(back_populates="company")
