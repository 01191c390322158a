"""Repository layer for database access."""

from multiauth.repositories.audit_log_repository import AuditLogRepository
from multiauth.repositories.session_repository import SessionRepository

__all__ = ["AuditLogRepository", "SessionRepository"]
