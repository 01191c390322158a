"""Database models for multiauth."""

from multiauth.models.audit_log import AuditLog
from multiauth.models.authorization_request import AuthorizationRequestRecord
from multiauth.models.session import LinkedAccountRecord, SessionRecord

__all__ = [
    "AuditLog",
    "AuthorizationRequestRecord",
    "LinkedAccountRecord",
    "SessionRecord",
]
