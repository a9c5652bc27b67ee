# noqa: F401 to ensure models are imported for metadata
from carslab_crm.models.audit import AuditLog, AuthLog
from carslab_crm.models.company import Company
from carslab_crm.models.signature import SignatureSession
from carslab_crm.models.tablet import PairingCode, TabletDevice, Workstation
from carslab_crm.models.user import User

__all__ = [
    "AuditLog",
    "AuthLog",
    "Company",
    "SignatureSession",
    "PairingCode",
    "TabletDevice",
    "Workstation",
    "User",
]
