"""
Domain exceptions of the signature service.

Services raise these; ``carslab_crm.api.errors`` turns them into JSON error
responses with the matching HTTP status.
"""

from typing import Any, Dict, Optional
from uuid import UUID


class CrmException(Exception):
    """Base exception for every domain error."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class BusinessException(CrmException):
    status_code = 400
    code = "BUSINESS_ERROR"


class EntityNotFoundException(CrmException):
    status_code = 404
    code = "ENTITY_NOT_FOUND"


class ResourceNotFoundException(CrmException):
    status_code = 404
    code = "RESOURCE_NOT_FOUND"


class AccessDeniedException(CrmException):
    status_code = 403
    code = "ACCESS_DENIED"


class SignatureSessionNotFoundException(EntityNotFoundException):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: UUID | str):
        super().__init__(f"Signature session not found: {session_id}", {"session_id": str(session_id)})


class InvalidSessionTransitionException(BusinessException):
    status_code = 409
    code = "INVALID_SESSION_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot change signature session status from {current} to {target}",
            {"current_status": current, "target_status": target},
        )
        self.current = current
        self.target = target


class SessionExpiredException(BusinessException):
    code = "SESSION_EXPIRED"


class TabletNotFoundException(EntityNotFoundException):
    code = "TABLET_NOT_FOUND"

    def __init__(self, tablet_id: UUID | str):
        super().__init__(f"Tablet not found: {tablet_id}", {"tablet_id": str(tablet_id)})


class TabletNotAvailableException(CrmException):
    status_code = 503
    code = "TABLET_NOT_AVAILABLE"

    def __init__(self, message: str = "No tablet available"):
        super().__init__(message)


class InvalidPairingCodeException(BusinessException):
    code = "INVALID_PAIRING_CODE"

    def __init__(self, message: str = "Invalid or expired pairing code"):
        super().__init__(message)


class UnauthorizedTabletException(CrmException):
    status_code = 401
    code = "UNAUTHORIZED_TABLET"


class RateLimitExceededException(CrmException):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"


class StorageException(CrmException):
    status_code = 500
    code = "STORAGE_ERROR"
