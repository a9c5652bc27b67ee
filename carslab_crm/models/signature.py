from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from carslab_crm.core.exceptions import InvalidSessionTransitionException
from carslab_crm.models.base import TimestampedModel, UUIDModel


class SignatureStatus(str, Enum):
    PENDING = "PENDING"
    SENT_TO_TABLET = "SENT_TO_TABLET"
    VIEWING_DOCUMENT = "VIEWING_DOCUMENT"
    SIGNING_IN_PROGRESS = "SIGNING_IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    ERROR = "ERROR"


TERMINAL_STATUSES = frozenset(
    {
        SignatureStatus.COMPLETED,
        SignatureStatus.CANCELLED,
        SignatureStatus.EXPIRED,
        SignatureStatus.ERROR,
    }
)

# Statuses in which the assigned tablet holds the document.
TABLET_STATUSES = frozenset(
    {
        SignatureStatus.SENT_TO_TABLET,
        SignatureStatus.VIEWING_DOCUMENT,
        SignatureStatus.SIGNING_IN_PROGRESS,
    }
)

ACTIVE_STATUSES = frozenset({SignatureStatus.PENDING}) | TABLET_STATUSES

_CLOSING = frozenset({SignatureStatus.CANCELLED, SignatureStatus.EXPIRED, SignatureStatus.ERROR})

ALLOWED_TRANSITIONS: dict[SignatureStatus, frozenset[SignatureStatus]] = {
    SignatureStatus.PENDING: frozenset({SignatureStatus.SENT_TO_TABLET}) | _CLOSING,
    SignatureStatus.SENT_TO_TABLET: frozenset(
        {
            SignatureStatus.VIEWING_DOCUMENT,
            SignatureStatus.SIGNING_IN_PROGRESS,
            SignatureStatus.COMPLETED,
        }
    )
    | _CLOSING,
    SignatureStatus.VIEWING_DOCUMENT: frozenset(
        {SignatureStatus.SIGNING_IN_PROGRESS, SignatureStatus.COMPLETED}
    )
    | _CLOSING,
    SignatureStatus.SIGNING_IN_PROGRESS: frozenset({SignatureStatus.COMPLETED}) | _CLOSING,
    SignatureStatus.COMPLETED: frozenset(),
    SignatureStatus.CANCELLED: frozenset(),
    SignatureStatus.EXPIRED: frozenset(),
    SignatureStatus.ERROR: frozenset(),
}


class SignatureSession(UUIDModel, TimestampedModel, table=True):
    """A tablet-mediated signature of one document for one customer.

    The status column only moves forward through ``ALLOWED_TRANSITIONS``;
    every mutation goes through ``transition_to`` so that a completed or
    cancelled session can never be brought back to life.
    """

    __tablename__ = "signature_sessions"

    company_id: UUID = Field(foreign_key="companies.id", index=True)
    # No foreign key: sessions outlive the tablets they were sent to.
    tablet_id: UUID = Field(index=True)
    workstation_id: UUID | None = Field(default=None, foreign_key="workstations.id", index=True)

    customer_name: str = Field(max_length=200, index=True)
    customer_email: str | None = Field(default=None, max_length=255)
    customer_phone: str | None = Field(default=None, max_length=50)

    vehicle_make: str | None = Field(default=None, max_length=100)
    vehicle_model: str | None = Field(default=None, max_length=100)
    vehicle_license_plate: str | None = Field(default=None, max_length=20)
    vehicle_vin: str | None = Field(default=None, max_length=17)
    vehicle_year: int | None = Field(default=None)
    vehicle_color: str | None = Field(default=None, max_length=50)

    service_type: str | None = Field(default=None, max_length=100)
    document_type: str | None = Field(default=None, max_length=100)
    signature_title: str | None = Field(default=None, max_length=200)
    instructions: str | None = Field(default=None)
    additional_notes: str | None = Field(default=None)
    business_context: dict | None = Field(default=None, sa_type=JSON)

    status: SignatureStatus = Field(default=SignatureStatus.PENDING, index=True)
    created_by: str = Field(max_length=100)
    expires_at: datetime = Field(index=True)
    signed_at: datetime | None = Field(default=None)
    signature_image_path: str | None = Field(default=None, max_length=500)
    error_message: str | None = Field(default=None, max_length=500)

    cancelled_by: str | None = Field(default=None, max_length=200)
    cancelled_at: datetime | None = Field(default=None)
    cancellation_reason: str | None = Field(default=None, max_length=500)

    def is_expired(self, now: datetime | None = None) -> bool:
        reference = now or datetime.utcnow()
        return reference > self.expires_at

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_be_signed(self, now: datetime | None = None) -> bool:
        return self.status == SignatureStatus.SENT_TO_TABLET and not self.is_expired(now)

    def accepts_signature(self, now: datetime | None = None) -> bool:
        return self.status in TABLET_STATUSES and not self.is_expired(now)

    def can_transition_to(self, target: SignatureStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[SignatureStatus(self.status)]

    def transition_to(self, target: SignatureStatus, error_message: str | None = None) -> None:
        current = SignatureStatus(self.status)
        if not self.can_transition_to(target):
            raise InvalidSessionTransitionException(current.value, target.value)
        self.status = target
        self.error_message = error_message
        self.updated_at = datetime.utcnow()

    def mark_as_signed(self, signature_image_path: str, signed_at: datetime | None = None) -> None:
        self.transition_to(SignatureStatus.COMPLETED)
        self.signed_at = signed_at or datetime.utcnow()
        self.signature_image_path = signature_image_path

    def cancel(self, cancelled_by: str, reason: str | None = None) -> None:
        self.transition_to(SignatureStatus.CANCELLED)
        self.cancelled_by = cancelled_by
        self.cancelled_at = datetime.utcnow()
        self.cancellation_reason = reason

    def expire(self) -> None:
        self.transition_to(SignatureStatus.EXPIRED)

    def vehicle_info(self) -> dict | None:
        info = {
            "make": self.vehicle_make,
            "model": self.vehicle_model,
            "license_plate": self.vehicle_license_plate,
            "vin": self.vehicle_vin,
            "year": self.vehicle_year,
            "color": self.vehicle_color,
        }
        if all(value is None for value in info.values()):
            return None
        return info
