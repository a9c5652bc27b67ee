from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlmodel import Session, select

from carslab_crm.core.config import settings
from carslab_crm.core.exceptions import (
    AccessDeniedException,
    BusinessException,
    InvalidSessionTransitionException,
    SessionExpiredException,
    StorageException,
    TabletNotAvailableException,
)
from carslab_crm.models.audit import AuditLog, AuditSeverity
from carslab_crm.models.company import Company
from carslab_crm.models.signature import SignatureSession, SignatureStatus
from carslab_crm.models.tablet import DeviceStatus, TabletDevice, Workstation
from carslab_crm.schemas.signature import (
    CreateSignatureSessionRequest,
    SignatureSessionRead,
    SignatureSubmission,
    VehicleInfo,
)
from carslab_crm.services.events import EventPublisher, SignatureCompleted
from carslab_crm.services.signature import SignatureService, decode_signature_image
from carslab_crm.services.storage import LocalFileStorageProvider
from tests.conftest import SIGNATURE_PNG


class _FailingStorage:
    def store(self, key, data, content_type="application/octet-stream", metadata=None):
        raise StorageException("Bucket unavailable")

    def retrieve(self, key):
        return None


@pytest.fixture()
def published() -> list:
    return []


@pytest.fixture()
def service(db_session: Session, tmp_path, published: list) -> SignatureService:
    events = EventPublisher(run_async=False)
    events.subscribe(SignatureCompleted, published.append)
    return SignatureService(db_session, storage=LocalFileStorageProvider(tmp_path / "files"), events=events)


def _request(tablet_id=None, **overrides) -> CreateSignatureSessionRequest:
    data = {
        "tablet_id": tablet_id,
        "customer_name": "Jan Kowalski",
        "customer_email": "jan@example.com",
        "vehicle_info": VehicleInfo(make="BMW", model="M3", license_plate="KR 1234"),
        "service_type": "Ceramic coating",
        "document_type": "PROTOCOL",
    }
    data.update(overrides)
    return CreateSignatureSessionRequest(**data)


def _submission(session: SignatureSession, device_id=None) -> SignatureSubmission:
    return SignatureSubmission(
        session_id=session.id,
        signature_image=SIGNATURE_PNG,
        signed_at=datetime.utcnow(),
        device_id=device_id or session.tablet_id,
    )


def test_create_session_is_pending_and_audited(db_session: Session, service: SignatureService, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]

    session = service.create_session(company.id, user, _request(tablet.id, timeout_minutes=10))

    assert session.status == SignatureStatus.PENDING
    assert session.created_by == user.email
    assert session.vehicle_make == "BMW"
    assert timedelta(minutes=9) < session.expires_at - datetime.utcnow() <= timedelta(minutes=10)

    audit = db_session.exec(select(AuditLog).where(AuditLog.action == "SIGNATURE_REQUEST")).one()
    assert audit.resource_id == str(session.id)
    assert audit.details["status"] == "CREATED"


def test_request_signature_sends_to_tablet(db_session: Session, service: SignatureService, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]

    session = service.request_signature(company.id, user, _request(tablet.id))

    assert session.status == SignatureStatus.SENT_TO_TABLET
    assert session.can_be_signed()
    transition = db_session.exec(select(AuditLog).where(AuditLog.action == "SESSION_SENT_TO_TABLET")).one()
    assert transition.details["from"] == "PENDING"


def test_request_without_tablet_picks_online_tablet(service: SignatureService, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    session = service.request_signature(company.id, user, _request())
    assert session.tablet_id == tablet.id


def test_request_through_workstation_uses_paired_tablet(
    db_session: Session, service: SignatureService, company_context: dict
) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    workstation = Workstation(company_id=company.id, name="Reception", paired_tablet_id=tablet.id)
    db_session.add(workstation)
    db_session.commit()

    session = service.request_signature(company.id, user, _request(workstation_id=workstation.id))
    assert session.tablet_id == tablet.id
    assert session.workstation_id == workstation.id


def test_default_timeout_comes_from_settings(service: SignatureService, company_context: dict, monkeypatch) -> None:
    monkeypatch.setattr(settings, "signature_session_ttl_minutes", 5)
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]

    session = service.create_session(company.id, user, _request(tablet.id))

    assert session.expires_at - datetime.utcnow() <= timedelta(minutes=5)


def test_timeout_above_maximum_rejected(service: SignatureService, company_context: dict, monkeypatch) -> None:
    monkeypatch.setattr(settings, "signature_session_max_minutes", 5)
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    with pytest.raises(BusinessException):
        service.create_session(company.id, user, _request(tablet.id, timeout_minutes=10))


def test_tablet_of_other_company_not_available(
    db_session: Session, service: SignatureService, company_context: dict
) -> None:
    other = Company(name="Other", slug=f"other-{uuid4().hex[:6]}")
    foreign_tablet = TabletDevice(company_id=other.id, device_token=uuid4().hex, friendly_name="Foreign")
    db_session.add_all([other, foreign_tablet])
    db_session.commit()

    company, user = company_context["company"], company_context["user"]
    with pytest.raises(TabletNotAvailableException):
        service.create_session(company.id, user, _request(foreign_tablet.id))


def test_inactive_tablet_not_available(db_session: Session, service: SignatureService, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    tablet.status = DeviceStatus.INACTIVE
    db_session.add(tablet)
    db_session.commit()

    with pytest.raises(TabletNotAvailableException):
        service.create_session(company.id, user, _request(tablet.id))


def test_cross_company_read_denied_and_logged(
    db_session: Session, service: SignatureService, company_context: dict
) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    session = service.request_signature(company.id, user, _request(tablet.id))
    intruder_company = uuid4()

    with pytest.raises(AccessDeniedException):
        service.get_company_session(intruder_company, session.id, ip_address="10.0.0.9")

    violation = db_session.exec(select(AuditLog).where(AuditLog.severity == AuditSeverity.CRITICAL)).one()
    assert violation.action == "CROSS_TENANT_SESSION_ACCESS"
    assert violation.ip_address == "10.0.0.9"
    assert violation.details["session_id"] == str(session.id)


def test_submit_signature_completes_and_publishes(
    db_session: Session, service: SignatureService, company_context: dict, published: list, tmp_path
) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    session = service.request_signature(company.id, user, _request(tablet.id))

    completed = service.submit_signature(tablet, _submission(session))

    assert completed.status == SignatureStatus.COMPLETED
    assert completed.signature_image_path == f"signatures/{company.id}/{session.id}.png"
    assert (tmp_path / "files" / completed.signature_image_path).exists()
    data, content_type = service.load_signature_image(completed)
    assert data.startswith(b"\x89PNG")
    assert content_type == "image/png"

    assert len(published) == 1
    assert published[0].session_id == session.id
    completion = db_session.exec(select(AuditLog).where(AuditLog.action == "SIGNATURE_COMPLETION")).one()
    assert completion.details["status"] == "COMPLETED"


def test_submit_after_viewing_and_signing(service: SignatureService, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    session = service.request_signature(company.id, user, _request(tablet.id))

    assert service.mark_viewing(tablet, session.id).status == SignatureStatus.VIEWING_DOCUMENT
    assert service.start_signing(tablet, session.id).status == SignatureStatus.SIGNING_IN_PROGRESS
    assert service.submit_signature(tablet, _submission(session)).status == SignatureStatus.COMPLETED


def test_only_assigned_tablet_can_submit(db_session: Session, service: SignatureService, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    other_tablet = TabletDevice(company_id=company.id, device_token=uuid4().hex, friendly_name="Second")
    db_session.add(other_tablet)
    db_session.commit()
    db_session.refresh(other_tablet)

    session = service.request_signature(company.id, user, _request(tablet.id))

    with pytest.raises(AccessDeniedException):
        service.submit_signature(other_tablet, _submission(session, device_id=other_tablet.id))
    with pytest.raises(AccessDeniedException):
        service.submit_signature(tablet, _submission(session, device_id=other_tablet.id))

    db_session.refresh(session)
    assert session.status == SignatureStatus.SENT_TO_TABLET


def test_submit_after_expiry_marks_session_expired(
    db_session: Session, service: SignatureService, company_context: dict, published: list
) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    session = service.request_signature(company.id, user, _request(tablet.id))
    session.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db_session.add(session)
    db_session.commit()

    with pytest.raises(SessionExpiredException):
        service.submit_signature(tablet, _submission(session))

    db_session.refresh(session)
    assert session.status == SignatureStatus.EXPIRED
    assert published == []


def test_storage_failure_moves_session_to_error(db_session: Session, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    service = SignatureService(db_session, storage=_FailingStorage(), events=EventPublisher(run_async=False))
    session = service.request_signature(company.id, user, _request(tablet.id))

    with pytest.raises(StorageException):
        service.submit_signature(tablet, _submission(session))

    db_session.refresh(session)
    assert session.status == SignatureStatus.ERROR
    assert session.error_message == "Bucket unavailable"


def test_failing_side_effect_does_not_break_submission(db_session: Session, company_context: dict, tmp_path) -> None:
    def broken_handler(event):
        raise RuntimeError("notification service down")

    events = EventPublisher(run_async=False)
    events.subscribe(SignatureCompleted, broken_handler)
    service = SignatureService(db_session, storage=LocalFileStorageProvider(tmp_path), events=events)
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    session = service.request_signature(company.id, user, _request(tablet.id))

    completed = service.submit_signature(tablet, _submission(session))
    assert completed.status == SignatureStatus.COMPLETED


def test_cancel_is_terminal(service: SignatureService, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    session = service.request_signature(company.id, user, _request(tablet.id))

    cancelled = service.cancel_session(company.id, session.id, cancelled_by=user.email, reason="Wrong customer")
    assert cancelled.status == SignatureStatus.CANCELLED
    assert cancelled.cancellation_reason == "Wrong customer"

    with pytest.raises(InvalidSessionTransitionException):
        service.cancel_session(company.id, session.id, cancelled_by=user.email)
    with pytest.raises(InvalidSessionTransitionException):
        service.submit_signature(tablet, _submission(session))


def test_completed_session_cannot_be_cancelled(service: SignatureService, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    session = service.request_signature(company.id, user, _request(tablet.id))
    service.submit_signature(tablet, _submission(session))

    with pytest.raises(InvalidSessionTransitionException):
        service.cancel_session(company.id, session.id, cancelled_by=user.email)


def test_expire_stale_sessions_and_lazy_expiry(
    db_session: Session, service: SignatureService, company_context: dict
) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    stale = service.request_signature(company.id, user, _request(tablet.id))
    fresh = service.request_signature(company.id, user, _request(tablet.id))

    later = stale.expires_at + timedelta(seconds=1)
    fresh.expires_at = later + timedelta(minutes=5)
    db_session.add(fresh)
    db_session.commit()

    assert service.expire_stale_sessions(now=later) == 1
    db_session.refresh(stale)
    assert stale.status == SignatureStatus.EXPIRED
    assert service.expire_stale_sessions(now=later) == 0

    fresh.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db_session.add(fresh)
    db_session.commit()
    assert service.get_session(fresh.id).status == SignatureStatus.EXPIRED


def test_pending_for_tablet_lists_open_sessions(service: SignatureService, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    first = service.request_signature(company.id, user, _request(tablet.id))
    second = service.request_signature(company.id, user, _request(tablet.id))
    service.cancel_session(company.id, second.id, cancelled_by=user.email)

    pending = service.pending_for_tablet(tablet)
    assert [item.id for item in pending] == [first.id]


def test_list_company_sessions_filters_by_status(service: SignatureService, company_context: dict) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    first = service.request_signature(company.id, user, _request(tablet.id))
    service.request_signature(company.id, user, _request(tablet.id))
    service.cancel_session(company.id, first.id, cancelled_by=user.email)

    items, total = service.list_company_sessions(company.id)
    assert total == 2
    cancelled, cancelled_total = service.list_company_sessions(company.id, SignatureStatus.CANCELLED)
    assert cancelled_total == 1
    assert cancelled[0].id == first.id


def test_decode_signature_image_rejects_garbage() -> None:
    with pytest.raises(BusinessException):
        decode_signature_image("data:image/gif;base64,R0lGOD==")
    with pytest.raises(BusinessException):
        decode_signature_image("data:image/png;base64,@@@")
    data, content_type = decode_signature_image(SIGNATURE_PNG)
    assert content_type == "image/png"
    assert data.startswith(b"\x89PNG")


def test_read_model_after_commit_expired_the_instance(
    db_session: Session, service: SignatureService, company_context: dict
) -> None:
    company, user, tablet = company_context["company"], company_context["user"], company_context["tablet"]
    session = service.request_signature(company.id, user, _request(tablet.id))
    cancelled = service.cancel_session(company.id, session.id, cancelled_by=user.email, reason="Wrong customer")
    db_session.expire_all()

    read = SignatureSessionRead.from_session(cancelled)

    assert read.status == SignatureStatus.CANCELLED
    assert read.cancellation_reason == "Wrong customer"
    assert read.vehicle_info.make == "BMW"
    assert read.has_signature is False
