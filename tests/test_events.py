import threading
from datetime import datetime
from unittest.mock import MagicMock
from uuid import uuid4

from sqlmodel import Session, select

from carslab_crm.models.audit import AuditLog
from carslab_crm.services import events as events_module
from carslab_crm.services.events import (
    EventPublisher,
    SignatureCompleted,
    SignatureSessionCancelled,
    SignatureSessionSent,
    acknowledge_signature,
    backup_signature_image,
    event_publisher,
    notify_tablet_session_cancelled,
    notify_tablet_session_sent,
)
from carslab_crm.services.storage import LocalFileStorageProvider


def _completed(path: str = "signatures/company/session.png") -> SignatureCompleted:
    return SignatureCompleted(
        session_id=uuid4(),
        company_id=uuid4(),
        tablet_id=uuid4(),
        signature_image_path=path,
        signed_at=datetime.utcnow(),
    )


def test_publish_runs_handlers_for_the_event_type_only():
    publisher = EventPublisher(run_async=False)
    completed, cancelled = [], []
    publisher.subscribe(SignatureCompleted, completed.append)
    publisher.subscribe(SignatureSessionCancelled, cancelled.append)

    event = _completed()
    publisher.publish(event)

    assert completed == [event]
    assert cancelled == []


def test_failing_handler_does_not_stop_the_others():
    publisher = EventPublisher(run_async=False)
    received = []

    def broken(_event):
        raise RuntimeError("backup offline")

    publisher.subscribe(SignatureCompleted, broken)
    publisher.subscribe(SignatureCompleted, received.append)

    publisher.publish(_completed())

    assert len(received) == 1


def test_async_publish_runs_on_worker_thread():
    publisher = EventPublisher(run_async=True, max_workers=1)
    done = threading.Event()
    threads = []

    def handler(_event):
        threads.append(threading.current_thread().name)
        done.set()

    publisher.subscribe(SignatureCompleted, handler)
    publisher.publish(_completed())

    assert done.wait(timeout=5)
    publisher.shutdown()
    assert threads[0].startswith("carslab-events")


def test_default_handlers_are_registered():
    assert acknowledge_signature in event_publisher.handlers_for(SignatureCompleted)
    assert backup_signature_image in event_publisher.handlers_for(SignatureCompleted)
    assert event_publisher.handlers_for(SignatureSessionCancelled)
    assert notify_tablet_session_sent in event_publisher.handlers_for(SignatureSessionSent)
    assert notify_tablet_session_cancelled in event_publisher.handlers_for(SignatureSessionCancelled)


def test_acknowledge_signature_writes_audit_entry(db_engine):
    event = _completed()

    acknowledge_signature(event)

    with Session(db_engine) as session:
        log = session.exec(select(AuditLog).where(AuditLog.action == "SIGNATURE_ACKNOWLEDGED")).one()
    assert log.resource_id == str(event.session_id)
    assert log.company_id == event.company_id


def test_backup_copies_signature_image(monkeypatch, tmp_path):
    primary = LocalFileStorageProvider(tmp_path / "primary")
    primary.store("signatures/company/session.jpg", b"jpeg-bytes", content_type="image/jpeg")
    backup = MagicMock()
    monkeypatch.setattr(events_module, "get_storage_provider", lambda: primary)
    monkeypatch.setattr(events_module, "get_backup_provider", lambda: backup)

    event = _completed("signatures/company/session.jpg")
    backup_signature_image(event)

    backup.store.assert_called_once()
    args, kwargs = backup.store.call_args
    assert args == ("signatures/company/session.jpg", b"jpeg-bytes")
    assert kwargs["content_type"] == "image/jpeg"
    assert kwargs["metadata"]["session_id"] == str(event.session_id)


def test_backup_is_skipped_when_disabled_or_missing(monkeypatch, tmp_path):
    backup = MagicMock()
    monkeypatch.setattr(events_module, "get_backup_provider", lambda: None)
    backup_signature_image(_completed())

    monkeypatch.setattr(events_module, "get_backup_provider", lambda: backup)
    monkeypatch.setattr(events_module, "get_storage_provider", lambda: LocalFileStorageProvider(tmp_path))
    backup_signature_image(_completed("signatures/company/missing.png"))

    backup.store.assert_not_called()


def test_tablet_is_notified_of_sent_and_cancelled_sessions(monkeypatch):
    connections = MagicMock()
    monkeypatch.setattr(events_module, "tablet_connections", connections)
    tablet_id, session_id = uuid4(), uuid4()
    expires_at = datetime(2024, 5, 1, 12, 15)

    notify_tablet_session_sent(
        SignatureSessionSent(
            session_id=session_id,
            company_id=uuid4(),
            tablet_id=tablet_id,
            document_type="PROTOCOL",
            signature_title="Vehicle handover",
            customer_name="Anna Nowak",
            expires_at=expires_at,
        )
    )
    notify_tablet_session_cancelled(
        SignatureSessionCancelled(
            session_id=session_id, company_id=uuid4(), cancelled_by="admin", reason="Wrong car", tablet_id=tablet_id
        )
    )
    notify_tablet_session_cancelled(
        SignatureSessionCancelled(session_id=uuid4(), company_id=uuid4(), cancelled_by="admin")
    )

    sent, cancelled = [call.args for call in connections.notify.call_args_list]
    assert sent[0] == tablet_id
    assert sent[1]["type"] == "signature_request"
    assert sent[1]["payload"]["session_id"] == str(session_id)
    assert sent[1]["payload"]["expires_at"] == "2024-05-01T12:15:00"
    assert cancelled == (
        tablet_id,
        {"type": "session_cancelled", "payload": {"session_id": str(session_id), "reason": "Wrong car"}},
    )
