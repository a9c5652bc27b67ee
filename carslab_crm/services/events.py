"""
Best-effort side effects triggered by domain events.

Handlers run after the triggering transaction has committed. A failing
handler is logged and skipped; it never reaches the request that published
the event.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, DefaultDict, List, Type
from uuid import UUID

from sqlmodel import Session

from carslab_crm.core.config import settings
from carslab_crm.core.logging_setup import logger
from carslab_crm.db import session as db_session_module
from carslab_crm.services.audit import SIGNATURE_RESOURCE, AuditService
from carslab_crm.services.storage import get_backup_provider, get_storage_provider
from carslab_crm.services.tablet_connections import tablet_connections, websocket_message

Handler = Callable[[Any], None]


@dataclass(frozen=True)
class SignatureCompleted:
    session_id: UUID
    company_id: UUID
    tablet_id: UUID
    signature_image_path: str
    signed_at: datetime
    occurred_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class SignatureSessionSent:
    session_id: UUID
    company_id: UUID
    tablet_id: UUID
    document_type: str | None
    signature_title: str | None
    customer_name: str
    expires_at: datetime
    occurred_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class SignatureSessionCancelled:
    session_id: UUID
    company_id: UUID
    cancelled_by: str
    reason: str | None = None
    tablet_id: UUID | None = None
    occurred_at: datetime = field(default_factory=datetime.utcnow)


class EventPublisher:
    def __init__(self, run_async: bool | None = None, max_workers: int | None = None) -> None:
        self._handlers: DefaultDict[Type, List[Handler]] = defaultdict(list)
        self._run_async = run_async
        self._max_workers = max_workers or settings.events_max_workers
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()

    @property
    def run_async(self) -> bool:
        if self._run_async is None:
            return settings.events_async
        return self._run_async

    def subscribe(self, event_type: Type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type: Type) -> list[Handler]:
        return list(self._handlers.get(event_type, []))

    def publish(self, event: Any) -> None:
        handlers = self.handlers_for(type(event))
        if not handlers:
            return
        for handler in handlers:
            if self.run_async:
                self._get_executor().submit(self._dispatch, handler, event)
            else:
                self._dispatch(handler, event)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="carslab-events"
                )
            return self._executor

    @staticmethod
    def _dispatch(handler: Handler, event: Any) -> None:
        name = getattr(handler, "__name__", repr(handler))
        try:
            handler(event)
        except Exception as exc:  # noqa: BLE001
            logger.error("Event handler %s failed for %s: %s", name, type(event).__name__, exc)


def acknowledge_signature(event: SignatureCompleted) -> None:
    with Session(db_session_module.engine) as session:
        AuditService(session).record(
            action="SIGNATURE_ACKNOWLEDGED",
            resource=SIGNATURE_RESOURCE,
            resource_id=str(event.session_id),
            company_id=event.company_id,
            details={
                "tablet_id": str(event.tablet_id),
                "signed_at": event.signed_at.isoformat(),
            },
        )
    logger.info("Signature %s acknowledged", event.session_id)


def backup_signature_image(event: SignatureCompleted) -> None:
    backup = get_backup_provider()
    if backup is None:
        return
    data = get_storage_provider().retrieve(event.signature_image_path)
    if data is None:
        logger.warning("Signature image %s missing, backup skipped", event.signature_image_path)
        return
    backup.store(
        event.signature_image_path,
        data,
        content_type="image/jpeg" if event.signature_image_path.endswith(".jpg") else "image/png",
        metadata={"session_id": str(event.session_id), "company_id": str(event.company_id)},
    )
    logger.info("Signature image of session %s copied to backup storage", event.session_id)


def log_cancellation(event: SignatureSessionCancelled) -> None:
    logger.info(
        "Signature session %s cancelled by %s (%s)",
        event.session_id,
        event.cancelled_by,
        event.reason or "no reason",
    )


def notify_tablet_session_sent(event: SignatureSessionSent) -> None:
    tablet_connections.notify(
        event.tablet_id,
        websocket_message(
            "signature_request",
            {
                "session_id": str(event.session_id),
                "document_type": event.document_type,
                "signature_title": event.signature_title,
                "customer_name": event.customer_name,
                "expires_at": event.expires_at.isoformat(),
            },
        ),
    )


def notify_tablet_session_cancelled(event: SignatureSessionCancelled) -> None:
    if event.tablet_id is None:
        return
    tablet_connections.notify(
        event.tablet_id,
        websocket_message("session_cancelled", {"session_id": str(event.session_id), "reason": event.reason}),
    )


def register_default_handlers(publisher: EventPublisher) -> EventPublisher:
    publisher.subscribe(SignatureCompleted, acknowledge_signature)
    publisher.subscribe(SignatureCompleted, backup_signature_image)
    publisher.subscribe(SignatureSessionSent, notify_tablet_session_sent)
    publisher.subscribe(SignatureSessionCancelled, log_cancellation)
    publisher.subscribe(SignatureSessionCancelled, notify_tablet_session_cancelled)
    return publisher


event_publisher = register_default_handlers(EventPublisher())
