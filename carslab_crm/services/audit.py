from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from carslab_crm.core.logging_setup import logger
from carslab_crm.models.audit import AuditLog, AuditSeverity, AuthLog
from carslab_crm.models.signature import SignatureSession, SignatureStatus

SIGNATURE_RESOURCE = "signature_session"
TABLET_RESOURCE = "tablet_device"
WORKSTATION_RESOURCE = "workstation"


class AuditService:
    """Compliance trail for signature sessions, tablets and security events.

    Audit writes never break the calling flow: a failed insert is logged and
    rolled back.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def record(
        self,
        action: str,
        resource: str,
        resource_id: str | None = None,
        company_id: UUID | None = None,
        user_id: UUID | None = None,
        details: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        severity: AuditSeverity = AuditSeverity.INFO,
    ) -> AuditLog | None:
        log = AuditLog(
            company_id=company_id,
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            details=details or {},
            ip_address=ip_address,
            user_agent=user_agent[:200] if user_agent else None,
            severity=severity,
        )
        try:
            self.session.add(log)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("Failed to save audit log %s for %s %s: %s", action, resource, resource_id, exc)
            return None
        return log

    def log_signature_request(
        self,
        session: SignatureSession,
        status: str,
        user_id: UUID | None = None,
        ip_address: str | None = None,
        details: dict | None = None,
    ) -> AuditLog | None:
        return self.record(
            action="SIGNATURE_REQUEST",
            resource=SIGNATURE_RESOURCE,
            resource_id=str(session.id),
            company_id=session.company_id,
            user_id=user_id,
            details={"status": status, **(details or {})},
            ip_address=ip_address,
            severity=AuditSeverity.ERROR if status == "ERROR" else AuditSeverity.INFO,
        )

    def log_signature_completion(
        self,
        session: SignatureSession,
        status: str,
        details: dict | None = None,
    ) -> AuditLog | None:
        return self.record(
            action="SIGNATURE_COMPLETION",
            resource=SIGNATURE_RESOURCE,
            resource_id=str(session.id),
            company_id=session.company_id,
            details={"status": status, "tablet_id": str(session.tablet_id), **(details or {})},
            severity=AuditSeverity.ERROR if status == "ERROR" else AuditSeverity.INFO,
        )

    def log_session_transition(
        self,
        session: SignatureSession,
        previous: SignatureStatus,
        performed_by: str,
        user_id: UUID | None = None,
        details: dict | None = None,
    ) -> AuditLog | None:
        current = SignatureStatus(session.status)
        return self.record(
            action=f"SESSION_{current.value}",
            resource=SIGNATURE_RESOURCE,
            resource_id=str(session.id),
            company_id=session.company_id,
            user_id=user_id,
            details={
                "from": SignatureStatus(previous).value,
                "to": current.value,
                "performed_by": performed_by,
                **(details or {}),
            },
            severity=AuditSeverity.WARN if current == SignatureStatus.ERROR else AuditSeverity.INFO,
        )

    def log_tablet_connection(
        self,
        tablet_id: UUID,
        company_id: UUID,
        status: str,
        details: dict | None = None,
    ) -> AuditLog | None:
        severity = {
            "ERROR": AuditSeverity.ERROR,
            "DISCONNECTED": AuditSeverity.WARN,
        }.get(status, AuditSeverity.INFO)
        return self.record(
            action="TABLET_CONNECTION",
            resource=TABLET_RESOURCE,
            resource_id=str(tablet_id),
            company_id=company_id,
            details={"status": status, **(details or {})},
            severity=severity,
        )

    def log_workstation_event(
        self,
        workstation_id: UUID,
        company_id: UUID,
        user_id: UUID | None,
        status: str,
    ) -> AuditLog | None:
        return self.record(
            action="WORKSTATION_CONNECTION",
            resource=WORKSTATION_RESOURCE,
            resource_id=str(workstation_id),
            company_id=company_id,
            user_id=user_id,
            details={"status": status},
        )

    def log_security_violation(
        self,
        action: str,
        ip_address: str | None = None,
        details: dict | None = None,
        company_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> AuditLog | None:
        logger.warning("SECURITY_VIOLATION: %s from %s - %s", action, ip_address, details)
        return self.record(
            action=action.upper(),
            resource="security",
            company_id=company_id,
            user_id=user_id,
            details=details,
            ip_address=ip_address,
            severity=AuditSeverity.CRITICAL,
        )

    def record_auth(
        self,
        user_id: UUID | None,
        event_type: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        success: bool = True,
    ) -> None:
        log = AuthLog(
            user_id=user_id,
            event_type=event_type,
            ip_address=ip_address,
            user_agent=user_agent,
            success=success,
        )
        try:
            self.session.add(log)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("Failed to save auth log %s: %s", event_type, exc)

    def list_events(
        self,
        company_id: UUID,
        action: Optional[str] = None,
        resource_id: Optional[str] = None,
        severity: Optional[AuditSeverity] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditLog], int]:
        query = select(AuditLog).where(AuditLog.company_id == company_id)
        if action:
            query = query.where(AuditLog.action == action)
        if resource_id:
            query = query.where(AuditLog.resource_id == resource_id)
        if severity:
            query = query.where(AuditLog.severity == severity)
        if start_at:
            query = query.where(AuditLog.created_at >= start_at)
        if end_at:
            query = query.where(AuditLog.created_at <= end_at)

        total = self.session.exec(
            select(func.count()).select_from(query.subquery())
        ).one()

        items = self.session.exec(
            query.order_by(AuditLog.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return list(items), total

    def get_event(self, log_id: UUID) -> AuditLog | None:
        return self.session.get(AuditLog, log_id)
