from datetime import datetime, timezone
from typing import Any, List
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from carslab_crm.models.signature import SignatureStatus
from carslab_crm.schemas.common import IDModel, Timestamped

SIGNATURE_IMAGE_PATTERN = r"^data:image/(png|jpeg);base64,[A-Za-z0-9+/=]+$"
SIGNATURE_IMAGE_MAX_LENGTH = 5_000_000
_COMPUTED_FIELDS = frozenset({"vehicle_info", "has_signature", "can_be_signed"})


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class VehicleInfo(BaseModel):
    make: str | None = Field(default=None, max_length=100)
    model: str | None = Field(default=None, max_length=100)
    license_plate: str | None = Field(default=None, max_length=20)
    vin: str | None = Field(default=None, max_length=17)
    year: int | None = Field(default=None, ge=1900, le=2100)
    color: str | None = Field(default=None, max_length=50)


class CreateSignatureSessionRequest(BaseModel):
    tablet_id: UUID | None = None
    workstation_id: UUID | None = None
    customer_name: str = Field(min_length=1, max_length=200)
    customer_email: EmailStr | None = None
    customer_phone: str | None = Field(default=None, max_length=50)
    vehicle_info: VehicleInfo | None = None
    service_type: str | None = Field(default=None, max_length=100)
    document_type: str | None = Field(default=None, max_length=100)
    signature_title: str | None = Field(default=None, max_length=200)
    instructions: str | None = Field(default=None, max_length=2000)
    additional_notes: str | None = Field(default=None, max_length=2000)
    timeout_minutes: int | None = Field(default=None, ge=1, le=30)

    @field_validator("customer_name")
    @classmethod
    def strip_customer_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("customer_name must not be blank")
        return cleaned


class SignatureSubmission(BaseModel):
    session_id: UUID
    signature_image: str = Field(
        min_length=1,
        max_length=SIGNATURE_IMAGE_MAX_LENGTH,
        pattern=SIGNATURE_IMAGE_PATTERN,
    )
    signed_at: datetime
    device_id: UUID
    metadata: dict[str, Any] | None = None

    @field_validator("signed_at")
    @classmethod
    def signed_at_not_in_future(cls, value: datetime) -> datetime:
        value = _to_naive_utc(value)
        if value > datetime.utcnow():
            raise ValueError("signed_at cannot be in the future")
        return value


class CancelSessionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class SignatureSessionRead(IDModel, Timestamped):
    company_id: UUID
    tablet_id: UUID
    workstation_id: UUID | None = None
    customer_name: str
    customer_email: str | None = None
    customer_phone: str | None = None
    vehicle_info: VehicleInfo | None = None
    service_type: str | None = None
    document_type: str | None = None
    signature_title: str | None = None
    instructions: str | None = None
    additional_notes: str | None = None
    business_context: dict[str, Any] | None = None
    status: SignatureStatus
    created_by: str
    expires_at: datetime
    signed_at: datetime | None = None
    error_message: str | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    has_signature: bool = False
    can_be_signed: bool = False

    @classmethod
    def from_session(cls, session) -> "SignatureSessionRead":
        # vehicle_info and can_be_signed are methods on the table model; getattr
        # also reloads an instance expired by a commit
        data = {name: getattr(session, name) for name in cls.model_fields if name not in _COMPUTED_FIELDS}
        vehicle = session.vehicle_info()
        data.update(
            vehicle_info=VehicleInfo(**vehicle) if vehicle else None,
            has_signature=session.signature_image_path is not None,
            can_be_signed=session.can_be_signed(),
        )
        return cls.model_validate(data)


class SignatureSessionList(BaseModel):
    items: List[SignatureSessionRead]
    total: int
    page: int
    page_size: int


class SignatureActionResponse(BaseModel):
    success: bool = True
    session_id: UUID
    status: SignatureStatus
    message: str
    expires_at: datetime | None = None
    signed_at: datetime | None = None


class SignatureImageRead(BaseModel):
    session_id: UUID
    signature_image: str
    signed_at: datetime | None = None


class ExpireSessionsResponse(BaseModel):
    expired: int
