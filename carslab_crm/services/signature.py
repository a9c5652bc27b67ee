import base64
import binascii
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func
from sqlmodel import Session, select

from carslab_crm.core.config import settings
from carslab_crm.core.exceptions import (
    AccessDeniedException,
    BusinessException,
    InvalidSessionTransitionException,
    ResourceNotFoundException,
    SessionExpiredException,
    SignatureSessionNotFoundException,
    StorageException,
    TabletNotAvailableException,
)
from carslab_crm.core.logging_setup import logger
from carslab_crm.models.signature import (
    ACTIVE_STATUSES,
    TABLET_STATUSES,
    SignatureSession,
    SignatureStatus,
)
from carslab_crm.models.tablet import DeviceStatus, TabletDevice
from carslab_crm.models.user import User
from carslab_crm.schemas.signature import CreateSignatureSessionRequest, SignatureSubmission
from carslab_crm.services.audit import AuditService
from carslab_crm.services.events import (
    EventPublisher,
    SignatureCompleted,
    SignatureSessionCancelled,
    SignatureSessionSent,
    event_publisher,
)
from carslab_crm.services.storage import StorageProvider, get_storage_provider
from carslab_crm.services.tablet import TabletManagementService

_IMAGE_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg"}
_CONTENT_TYPES = {extension: content_type for content_type, extension in _IMAGE_EXTENSIONS.items()}


def decode_signature_image(data_url: str) -> tuple[bytes, str]:
    """Split a ``data:image/...;base64,`` URL into raw bytes and its content type."""
    try:
        header, encoded = data_url.split(",", 1)
    except ValueError as exc:
        raise BusinessException("Invalid signature image") from exc
    content_type = header.removeprefix("data:").split(";", 1)[0]
    if content_type not in _IMAGE_EXTENSIONS:
        raise BusinessException(f"Unsupported signature image type: {content_type}")
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise BusinessException("Invalid signature image encoding") from exc
    if not data:
        raise BusinessException("Signature image is empty")
    return data, content_type


def signature_storage_key(session: SignatureSession, content_type: str) -> str:
    return f"signatures/{session.company_id}/{session.id}.{_IMAGE_EXTENSIONS[content_type]}"


def _actor(user: User | None) -> str:
    if user is None:
        return "system"
    return user.email or str(user.id)


class SignatureService:
    """Lifecycle of tablet signature sessions.

    Every status change goes through ``SignatureSession.transition_to`` and is
    written to the audit trail. Reads lazily expire sessions past their
    deadline.
    """

    def __init__(
        self,
        session: Session,
        storage: StorageProvider | None = None,
        events: EventPublisher | None = None,
    ) -> None:
        self.session = session
        self.audit = AuditService(session)
        self._storage = storage
        self.events = events or event_publisher

    @property
    def storage(self) -> StorageProvider:
        if self._storage is None:
            self._storage = get_storage_provider()
        return self._storage

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_session(
        self,
        company_id: UUID,
        user: User | None,
        payload: CreateSignatureSessionRequest,
        business_context: dict[str, Any] | None = None,
    ) -> SignatureSession:
        timeout = payload.timeout_minutes or settings.signature_session_ttl_minutes
        if timeout < 1 or timeout > settings.signature_session_max_minutes:
            raise BusinessException(
                f"timeout_minutes must be between 1 and {settings.signature_session_max_minutes}"
            )

        tablet = self._resolve_tablet(company_id, payload.tablet_id, payload.workstation_id)
        vehicle = payload.vehicle_info

        signature_session = SignatureSession(
            company_id=company_id,
            tablet_id=tablet.id,
            workstation_id=payload.workstation_id or tablet.workstation_id,
            customer_name=payload.customer_name,
            customer_email=payload.customer_email,
            customer_phone=payload.customer_phone,
            vehicle_make=vehicle.make if vehicle else None,
            vehicle_model=vehicle.model if vehicle else None,
            vehicle_license_plate=vehicle.license_plate if vehicle else None,
            vehicle_vin=vehicle.vin if vehicle else None,
            vehicle_year=vehicle.year if vehicle else None,
            vehicle_color=vehicle.color if vehicle else None,
            service_type=payload.service_type,
            document_type=payload.document_type,
            signature_title=payload.signature_title,
            instructions=payload.instructions,
            additional_notes=payload.additional_notes,
            business_context=business_context,
            status=SignatureStatus.PENDING,
            created_by=_actor(user),
            expires_at=datetime.utcnow() + timedelta(minutes=timeout),
        )
        self.session.add(signature_session)
        self.session.commit()
        self.session.refresh(signature_session)

        logger.info(
            "Signature session %s created for company %s on tablet %s",
            signature_session.id,
            company_id,
            tablet.id,
        )
        self.audit.log_signature_request(
            signature_session,
            "CREATED",
            user_id=user.id if user else None,
            details={"customer_name": signature_session.customer_name, "timeout_minutes": timeout},
        )
        return signature_session

    def _resolve_tablet(
        self,
        company_id: UUID,
        tablet_id: UUID | None,
        workstation_id: UUID | None,
    ) -> TabletDevice:
        if tablet_id:
            tablet = self.session.get(TabletDevice, tablet_id)
            if not tablet or tablet.company_id != company_id or tablet.status != DeviceStatus.ACTIVE:
                raise TabletNotAvailableException(f"Tablet {tablet_id} is not available")
            return tablet

        management = TabletManagementService(self.session)
        if workstation_id:
            workstation = management.get_workstation(company_id, workstation_id)
            tablet = management.select_tablet(workstation)
            if not tablet:
                raise TabletNotAvailableException(f"No tablet available for workstation {workstation.name}")
            return tablet

        tablet = management.find_available_tablet(company_id)
        if not tablet:
            raise TabletNotAvailableException()
        return tablet

    def send_to_tablet(self, signature_session: SignatureSession, user_id: UUID | None = None) -> SignatureSession:
        self._transition(signature_session, SignatureStatus.SENT_TO_TABLET, performed_by="system", user_id=user_id)
        logger.info("Signature session %s sent to tablet %s", signature_session.id, signature_session.tablet_id)
        self.events.publish(
            SignatureSessionSent(
                session_id=signature_session.id,
                company_id=signature_session.company_id,
                tablet_id=signature_session.tablet_id,
                document_type=signature_session.document_type,
                signature_title=signature_session.signature_title,
                customer_name=signature_session.customer_name,
                expires_at=signature_session.expires_at,
            )
        )
        return signature_session

    def request_signature(
        self,
        company_id: UUID,
        user: User | None,
        payload: CreateSignatureSessionRequest,
        business_context: dict[str, Any] | None = None,
    ) -> SignatureSession:
        signature_session = self.create_session(company_id, user, payload, business_context)
        return self.send_to_tablet(signature_session, user_id=user.id if user else None)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self, session_id: UUID) -> SignatureSession:
        signature_session = self.session.get(SignatureSession, session_id)
        if not signature_session:
            raise SignatureSessionNotFoundException(session_id)
        return signature_session

    def get_session(self, session_id: UUID) -> SignatureSession:
        signature_session = self._load(session_id)
        self.refresh_expiry(signature_session)
        return signature_session

    def get_company_session(
        self,
        company_id: UUID,
        session_id: UUID,
        user_id: UUID | None = None,
        ip_address: str | None = None,
    ) -> SignatureSession:
        signature_session = self._load(session_id)
        if signature_session.company_id != company_id:
            self.audit.log_security_violation(
                "cross_tenant_session_access",
                ip_address=ip_address,
                company_id=company_id,
                user_id=user_id,
                details={
                    "session_id": str(session_id),
                    "requested_by_company": str(company_id),
                },
            )
            raise AccessDeniedException("Access denied")
        self.refresh_expiry(signature_session)
        return signature_session

    def list_company_sessions(
        self,
        company_id: UUID,
        status: Optional[SignatureStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[SignatureSession], int]:
        self.expire_stale_sessions(company_id=company_id)

        query = select(SignatureSession).where(SignatureSession.company_id == company_id)
        if status:
            query = query.where(SignatureSession.status == status)

        total = self.session.exec(select(func.count()).select_from(query.subquery())).one()
        items = self.session.exec(
            query.order_by(SignatureSession.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return list(items), total

    def pending_for_tablet(self, tablet: TabletDevice) -> list[SignatureSession]:
        self.expire_stale_sessions(tablet_id=tablet.id)
        return list(
            self.session.exec(
                select(SignatureSession)
                .where(
                    SignatureSession.tablet_id == tablet.id,
                    SignatureSession.status.in_(list(TABLET_STATUSES)),
                )
                .order_by(SignatureSession.created_at)
            ).all()
        )

    def load_signature_image(self, signature_session: SignatureSession) -> tuple[bytes, str]:
        path = signature_session.signature_image_path
        if not path:
            raise ResourceNotFoundException(f"Signature session {signature_session.id} has no signature image")
        data = self.storage.retrieve(path)
        if data is None:
            raise ResourceNotFoundException(f"Signature image not found for session {signature_session.id}")
        extension = path.rsplit(".", 1)[-1]
        return data, _CONTENT_TYPES.get(extension, "application/octet-stream")

    # ------------------------------------------------------------------
    # Tablet-side progress
    # ------------------------------------------------------------------

    def _tablet_session(
        self,
        tablet: TabletDevice,
        session_id: UUID,
        ip_address: str | None = None,
    ) -> SignatureSession:
        signature_session = self._load(session_id)
        if signature_session.tablet_id != tablet.id:
            self.audit.log_security_violation(
                "foreign_tablet_session_access",
                ip_address=ip_address,
                company_id=tablet.company_id,
                details={"session_id": str(session_id), "tablet_id": str(tablet.id)},
            )
            raise AccessDeniedException("Access denied")
        return signature_session

    def _ensure_not_expired(self, signature_session: SignatureSession) -> None:
        if self.refresh_expiry(signature_session) or signature_session.status == SignatureStatus.EXPIRED:
            raise SessionExpiredException(f"Signature session {signature_session.id} has expired")

    def mark_viewing(self, tablet: TabletDevice, session_id: UUID, ip_address: str | None = None) -> SignatureSession:
        signature_session = self._tablet_session(tablet, session_id, ip_address)
        self._ensure_not_expired(signature_session)
        self._transition(signature_session, SignatureStatus.VIEWING_DOCUMENT, performed_by=f"tablet:{tablet.id}")
        return signature_session

    def start_signing(self, tablet: TabletDevice, session_id: UUID, ip_address: str | None = None) -> SignatureSession:
        signature_session = self._tablet_session(tablet, session_id, ip_address)
        self._ensure_not_expired(signature_session)
        self._transition(signature_session, SignatureStatus.SIGNING_IN_PROGRESS, performed_by=f"tablet:{tablet.id}")
        return signature_session

    def submit_signature(
        self,
        tablet: TabletDevice,
        submission: SignatureSubmission,
        ip_address: str | None = None,
    ) -> SignatureSession:
        if submission.device_id != tablet.id:
            self.audit.log_security_violation(
                "device_id_mismatch",
                ip_address=ip_address,
                company_id=tablet.company_id,
                details={"device_id": str(submission.device_id), "tablet_id": str(tablet.id)},
            )
            raise AccessDeniedException("Device ID mismatch")

        signature_session = self._tablet_session(tablet, submission.session_id, ip_address)
        self._ensure_not_expired(signature_session)
        if not signature_session.accepts_signature():
            raise InvalidSessionTransitionException(
                SignatureStatus(signature_session.status).value, SignatureStatus.COMPLETED.value
            )

        data, content_type = decode_signature_image(submission.signature_image)
        key = signature_storage_key(signature_session, content_type)
        try:
            self.storage.store(
                key,
                data,
                content_type=content_type,
                metadata={
                    "session_id": str(signature_session.id),
                    "company_id": str(signature_session.company_id),
                    "tablet_id": str(tablet.id),
                },
            )
        except StorageException as exc:
            self._transition(
                signature_session,
                SignatureStatus.ERROR,
                performed_by=f"tablet:{tablet.id}",
                error_message=exc.message,
            )
            self.audit.log_signature_completion(signature_session, "ERROR", {"error": exc.message})
            raise

        previous = SignatureStatus(signature_session.status)
        signature_session.mark_as_signed(key, submission.signed_at)
        self.session.add(signature_session)
        self.session.commit()
        self.session.refresh(signature_session)

        logger.info("Signature received for session %s from tablet %s", signature_session.id, tablet.id)
        self.audit.log_session_transition(signature_session, previous, performed_by=f"tablet:{tablet.id}")
        self.audit.log_signature_completion(signature_session, "COMPLETED", {"size_bytes": len(data)})

        self.events.publish(
            SignatureCompleted(
                session_id=signature_session.id,
                company_id=signature_session.company_id,
                tablet_id=tablet.id,
                signature_image_path=key,
                signed_at=signature_session.signed_at,
            )
        )
        return signature_session

    # ------------------------------------------------------------------
    # Cancellation and expiry
    # ------------------------------------------------------------------

    def cancel_session(
        self,
        company_id: UUID,
        session_id: UUID,
        cancelled_by: str,
        reason: str | None = None,
        user_id: UUID | None = None,
        ip_address: str | None = None,
    ) -> SignatureSession:
        signature_session = self.get_company_session(company_id, session_id, user_id, ip_address)
        previous = SignatureStatus(signature_session.status)
        signature_session.cancel(cancelled_by, reason)
        self.session.add(signature_session)
        self.session.commit()
        self.session.refresh(signature_session)

        logger.info("Signature session %s cancelled by %s", session_id, cancelled_by)
        self.audit.log_session_transition(
            signature_session, previous, performed_by=cancelled_by, user_id=user_id, details={"reason": reason}
        )
        self.events.publish(
            SignatureSessionCancelled(
                session_id=signature_session.id,
                company_id=company_id,
                cancelled_by=cancelled_by,
                reason=reason,
                tablet_id=signature_session.tablet_id,
            )
        )
        return signature_session

    def refresh_expiry(self, signature_session: SignatureSession, now: datetime | None = None) -> bool:
        if signature_session.status not in ACTIVE_STATUSES or not signature_session.is_expired(now):
            return False
        self._transition(signature_session, SignatureStatus.EXPIRED, performed_by="system")
        logger.info("Signature session %s expired", signature_session.id)
        return True

    def expire_stale_sessions(
        self,
        now: datetime | None = None,
        company_id: UUID | None = None,
        tablet_id: UUID | None = None,
    ) -> int:
        reference = now or datetime.utcnow()
        query = select(SignatureSession).where(
            SignatureSession.status.in_(list(ACTIVE_STATUSES)),
            SignatureSession.expires_at < reference,
        )
        if company_id:
            query = query.where(SignatureSession.company_id == company_id)
        if tablet_id:
            query = query.where(SignatureSession.tablet_id == tablet_id)

        stale = self.session.exec(query).all()
        for signature_session in stale:
            self.refresh_expiry(signature_session, reference)
        if stale:
            logger.info("Expired %s stale signature sessions", len(stale))
        return len(stale)

    # ------------------------------------------------------------------

    def _transition(
        self,
        signature_session: SignatureSession,
        target: SignatureStatus,
        performed_by: str,
        user_id: UUID | None = None,
        error_message: str | None = None,
    ) -> None:
        previous = SignatureStatus(signature_session.status)
        signature_session.transition_to(target, error_message)
        self.session.add(signature_session)
        self.session.commit()
        self.session.refresh(signature_session)
        self.audit.log_session_transition(signature_session, previous, performed_by=performed_by, user_id=user_id)
