from collections import Counter
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import func, update
from sqlmodel import Session, select

from carslab_crm.core.config import settings
from carslab_crm.core.exceptions import (
    EntityNotFoundException,
    InvalidPairingCodeException,
    TabletNotFoundException,
)
from carslab_crm.core.logging_setup import logger
from carslab_crm.models.signature import ACTIVE_STATUSES, SignatureSession, SignatureStatus
from carslab_crm.models.tablet import DeviceStatus, PairingCode, TabletDevice, Workstation
from carslab_crm.models.user import User
from carslab_crm.schemas.tablet import (
    HeartbeatResponse,
    TabletCredentials,
    TabletDeviceRead,
    TabletPairingRequest,
    TabletRegistrationRequest,
    TabletStatsResponse,
    WorkstationCreate,
)
from carslab_crm.services.audit import AuditService
from carslab_crm.utils.security import create_tablet_token, generate_device_token, generate_pairing_code

_MAX_CODE_ATTEMPTS = 10


def tablet_to_read(tablet: TabletDevice, now: datetime | None = None) -> TabletDeviceRead:
    # getattr reloads an instance expired by a commit, model_dump does not
    data = {name: getattr(tablet, name) for name in TabletDeviceRead.model_fields if name != "is_online"}
    data["is_online"] = tablet.is_online(settings.tablet_online_window_seconds, now)
    return TabletDeviceRead.model_validate(data)


class TabletPairingService:
    """Issues short-lived pairing codes and turns them into tablet credentials."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.audit = AuditService(session)

    def initiate_registration(
        self,
        company_id: UUID,
        user: User | None,
        payload: TabletRegistrationRequest,
    ) -> PairingCode:
        location_id = payload.location_id
        if payload.workstation_id:
            workstation = self.session.get(Workstation, payload.workstation_id)
            if not workstation or workstation.company_id != company_id:
                raise EntityNotFoundException(f"Workstation not found: {payload.workstation_id}")
            location_id = location_id or workstation.location_id

        code = self._unused_code()
        pairing = PairingCode(
            code=code,
            company_id=company_id,
            location_id=location_id,
            workstation_id=payload.workstation_id,
            device_name=payload.device_name,
            created_by_user_id=user.id if user else None,
            expires_at=datetime.utcnow() + timedelta(seconds=settings.pairing_code_ttl_seconds),
        )
        self.session.add(pairing)
        self.session.commit()
        self.session.refresh(pairing)

        logger.info("Pairing code generated for company %s (expires %s)", company_id, pairing.expires_at)
        return pairing

    def _unused_code(self) -> str:
        now = datetime.utcnow()
        for _ in range(_MAX_CODE_ATTEMPTS):
            code = generate_pairing_code()
            existing = self.session.get(PairingCode, code)
            if existing is None:
                return code
            # used codes stay as the pairing record of their tablet
            if existing.used_at is None and existing.expires_at < now:
                self.session.delete(existing)
                self.session.flush()
                return code
        raise InvalidPairingCodeException("Could not allocate a pairing code, try again")

    def complete_pairing(self, payload: TabletPairingRequest) -> TabletCredentials:
        now = datetime.utcnow()
        # conditional update so that only one caller can consume a code
        claimed = self.session.connection().execute(
            update(PairingCode)
            .where(
                PairingCode.code == payload.code,
                PairingCode.used_at.is_(None),
                PairingCode.expires_at >= now,
            )
            .values(used_at=now)
        )
        if claimed.rowcount != 1:
            self.session.rollback()
            logger.warning("Rejected pairing attempt with code %s", payload.code)
            raise InvalidPairingCodeException()
        pairing = self.session.get(PairingCode, payload.code, populate_existing=True)

        tablet = TabletDevice(
            company_id=pairing.company_id,
            location_id=pairing.location_id,
            device_token=generate_device_token(),
            friendly_name=payload.device_name or pairing.device_name or "Tablet",
            workstation_id=pairing.workstation_id,
            status=DeviceStatus.ACTIVE,
            last_seen=now,
            device_info=payload.device_info,
        )
        self.session.add(tablet)
        self.session.flush()

        if pairing.workstation_id:
            workstation = self.session.get(Workstation, pairing.workstation_id)
            if workstation:
                workstation.paired_tablet_id = tablet.id
                workstation.updated_at = now
                self.session.add(workstation)

        pairing.used_by_tablet_id = tablet.id
        self.session.add(pairing)
        self.session.commit()
        self.session.refresh(tablet)

        logger.info("Tablet %s paired for company %s", tablet.id, tablet.company_id)
        self.audit.log_tablet_connection(
            tablet.id,
            tablet.company_id,
            "PAIRED",
            {"device_name": tablet.friendly_name, "workstation_id": str(tablet.workstation_id)},
        )

        return TabletCredentials(
            device_id=tablet.id,
            device_token=tablet.device_token,
            access_token=create_tablet_token(str(tablet.id), str(tablet.company_id)),
            websocket_url=f"{settings.websocket_base_url.rstrip('/')}/ws/tablet/{tablet.id}",
            company_id=tablet.company_id,
            location_id=tablet.location_id,
            workstation_id=tablet.workstation_id,
        )

    def cleanup_expired_codes(self, now: datetime | None = None) -> int:
        reference = now or datetime.utcnow()
        expired = self.session.exec(
            select(PairingCode).where(PairingCode.expires_at < reference, PairingCode.used_at.is_(None))
        ).all()
        for pairing in expired:
            self.session.delete(pairing)
        self.session.commit()
        if expired:
            logger.info("Removed %s expired pairing codes", len(expired))
        return len(expired)

    def pairing_stats(self, company_id: UUID) -> dict[str, int]:
        now = datetime.utcnow()
        codes = self.session.exec(select(PairingCode).where(PairingCode.company_id == company_id)).all()
        return {
            "active_codes": sum(1 for code in codes if code.is_valid(now)),
            "used_codes": sum(1 for code in codes if code.used_at is not None),
            "expired_codes": sum(1 for code in codes if code.used_at is None and code.expires_at < now),
        }


class TabletManagementService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.audit = AuditService(session)

    # ------------------------------------------------------------------
    # Tablets
    # ------------------------------------------------------------------

    def list_tablets(self, company_id: UUID, status: Optional[DeviceStatus] = None) -> list[TabletDevice]:
        query = select(TabletDevice).where(TabletDevice.company_id == company_id)
        if status:
            query = query.where(TabletDevice.status == status)
        return list(self.session.exec(query.order_by(TabletDevice.created_at)).all())

    def get_tablet(self, company_id: UUID, tablet_id: UUID) -> TabletDevice:
        tablet = self.session.get(TabletDevice, tablet_id)
        if not tablet or tablet.company_id != company_id:
            raise TabletNotFoundException(tablet_id)
        return tablet

    def heartbeat(self, tablet: TabletDevice, device_info: dict | None = None) -> HeartbeatResponse:
        now = datetime.utcnow()
        was_online = tablet.is_online(settings.tablet_online_window_seconds, now)
        tablet.last_seen = now
        if tablet.status == DeviceStatus.INACTIVE:
            tablet.status = DeviceStatus.ACTIVE
        if device_info:
            tablet.device_info = {**(tablet.device_info or {}), **device_info}
        tablet.updated_at = now
        self.session.add(tablet)
        self.session.commit()
        self.session.refresh(tablet)

        if not was_online:
            self.audit.log_tablet_connection(tablet.id, tablet.company_id, "CONNECTED")

        pending = self.session.exec(
            select(func.count())
            .select_from(SignatureSession)
            .where(
                SignatureSession.tablet_id == tablet.id,
                SignatureSession.status.in_(list(ACTIVE_STATUSES)),
                SignatureSession.expires_at >= now,
            )
        ).one()
        return HeartbeatResponse(
            device_id=tablet.id,
            status=tablet.status,
            last_seen=tablet.last_seen,
            pending_sessions=pending,
        )

    def disconnect_tablet(self, company_id: UUID, tablet_id: UUID, user_id: UUID | None = None) -> TabletDevice:
        tablet = self.get_tablet(company_id, tablet_id)
        tablet.status = DeviceStatus.INACTIVE
        tablet.updated_at = datetime.utcnow()
        self.session.add(tablet)
        self.session.commit()
        self.session.refresh(tablet)

        logger.info("Tablet %s disconnected by %s", tablet_id, user_id)
        self.audit.log_tablet_connection(tablet.id, company_id, "DISCONNECTED", {"user_id": str(user_id)})
        return tablet

    def unpair_tablet(self, company_id: UUID, tablet_id: UUID, user_id: UUID | None = None) -> None:
        tablet = self.get_tablet(company_id, tablet_id)
        now = datetime.utcnow()

        active_sessions = self.session.exec(
            select(SignatureSession).where(
                SignatureSession.tablet_id == tablet.id,
                SignatureSession.status.in_(list(ACTIVE_STATUSES)),
            )
        ).all()
        performed_by = str(user_id or "system")
        previous_statuses = []
        for signature_session in active_sessions:
            previous_statuses.append(SignatureStatus(signature_session.status))
            signature_session.cancel(cancelled_by=performed_by, reason="Tablet unpaired")
            self.session.add(signature_session)

        workstations = self.session.exec(
            select(Workstation).where(Workstation.paired_tablet_id == tablet.id)
        ).all()
        for workstation in workstations:
            workstation.paired_tablet_id = None
            workstation.updated_at = now
            self.session.add(workstation)

        self.session.delete(tablet)
        self.session.commit()

        logger.info("Tablet %s unpaired, %s open sessions cancelled", tablet_id, len(active_sessions))
        for signature_session, previous in zip(active_sessions, previous_statuses):
            self.audit.log_session_transition(
                signature_session, previous, performed_by=performed_by, user_id=user_id, details={"reason": "Tablet unpaired"}
            )
        self.audit.log_tablet_connection(
            tablet_id, company_id, "UNPAIRED", {"user_id": str(user_id), "cancelled_sessions": len(active_sessions)}
        )

    def tablet_stats(self, company_id: UUID) -> TabletStatsResponse:
        now = datetime.utcnow()
        tablets = self.list_tablets(company_id)
        window = settings.tablet_online_window_seconds
        online = [tablet for tablet in tablets if tablet.is_online(window, now)]

        today = now.replace(hour=0, minute=0, second=0, microsecond=0)

        def _sessions_since(start: datetime) -> int:
            return self.session.exec(
                select(func.count())
                .select_from(SignatureSession)
                .where(SignatureSession.company_id == company_id, SignatureSession.created_at >= start)
            ).one()

        pairing_stats = TabletPairingService(self.session).pairing_stats(company_id)
        return TabletStatsResponse(
            total_tablets=len(tablets),
            online_tablets=len(online),
            offline_tablets=len(tablets) - len(online),
            active_tablets=sum(1 for tablet in tablets if tablet.status == DeviceStatus.ACTIVE),
            by_status=dict(Counter(DeviceStatus(tablet.status).value for tablet in tablets)),
            by_location=dict(Counter(tablet.location_id or "unassigned" for tablet in tablets)),
            sessions_today=_sessions_since(today),
            sessions_this_week=_sessions_since(today - timedelta(days=7)),
            sessions_this_month=_sessions_since(today - timedelta(days=30)),
            active_pairing_codes=pairing_stats["active_codes"],
        )

    # ------------------------------------------------------------------
    # Workstations
    # ------------------------------------------------------------------

    def create_workstation(self, company_id: UUID, payload: WorkstationCreate, user_id: UUID | None = None) -> Workstation:
        workstation = Workstation(
            company_id=company_id,
            location_id=payload.location_id,
            name=payload.name,
            code=payload.code,
        )
        self.session.add(workstation)
        self.session.commit()
        self.session.refresh(workstation)
        self.audit.log_workstation_event(workstation.id, company_id, user_id, "CREATED")
        return workstation

    def list_workstations(self, company_id: UUID) -> list[Workstation]:
        return list(
            self.session.exec(
                select(Workstation)
                .where(Workstation.company_id == company_id)
                .order_by(Workstation.name)
            ).all()
        )

    def get_workstation(self, company_id: UUID, workstation_id: UUID) -> Workstation:
        workstation = self.session.get(Workstation, workstation_id)
        if not workstation or workstation.company_id != company_id:
            raise EntityNotFoundException(f"Workstation not found: {workstation_id}")
        return workstation

    def select_tablet(self, workstation: Workstation) -> TabletDevice | None:
        """Paired tablet first, otherwise any active, online tablet at the same location."""
        now = datetime.utcnow()
        window = settings.tablet_online_window_seconds

        if workstation.paired_tablet_id:
            paired = self.session.get(TabletDevice, workstation.paired_tablet_id)
            if paired and paired.status == DeviceStatus.ACTIVE and paired.is_online(window, now):
                return paired

        return self.find_available_tablet(workstation.company_id, workstation.location_id)

    def find_available_tablet(self, company_id: UUID, location_id: str | None = None) -> TabletDevice | None:
        now = datetime.utcnow()
        window = settings.tablet_online_window_seconds
        candidates = self.session.exec(
            select(TabletDevice)
            .where(
                TabletDevice.company_id == company_id,
                TabletDevice.status == DeviceStatus.ACTIVE,
                TabletDevice.last_seen >= now - timedelta(seconds=window),
            )
            .order_by(TabletDevice.last_seen.desc())
        ).all()
        for candidate in candidates:
            if location_id is None or candidate.location_id == location_id:
                return candidate
        return None
