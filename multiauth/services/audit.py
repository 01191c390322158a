"""Audit logger for security-relevant authentication events."""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from multiauth.repositories.audit_log_repository import AuditLogRepository
from multiauth.utils.log_redaction import mask_token, redact_sensitive_data

logger = logging.getLogger(__name__)


class AuditLogger:
    """Records authentication events to the ``audit_logs`` table.

    Audit failures are logged and never propagate into the login flow.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        """
        Initialize audit logger.

        Args:
            session_maker: Factory for short-lived database sessions
        """
        self._session_maker = session_maker

    async def record(
        self,
        event_type: str,
        title: str,
        *,
        severity: str = "info",
        provider_id: str | None = None,
        session_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            async with self._session_maker() as db:
                await AuditLogRepository(db).create(
                    event_type=event_type,
                    severity=severity,
                    title=title,
                    description=description,
                    provider_id=provider_id,
                    session_id=session_id,
                    metadata=redact_sensitive_data(metadata or {}),
                )
            logger.debug(f"Audit event recorded: {event_type}")
        except Exception as e:
            # INTENTIONAL: auditing must not break authentication
            logger.error(f"Failed to record audit event {event_type}: {e}", exc_info=True)

    async def purge_older_than(self, days: int) -> int:
        """Delete entries past the retention window."""
        async with self._session_maker() as db:
            deleted = await AuditLogRepository(db).delete_older_than(days)
        if deleted:
            logger.info(f"Purged {deleted} audit entries older than {days} days")
        return deleted

    async def log_login_succeeded(self, provider_id: str, session_id: str, subject_id: str, resumed: bool):
        await self.record(
            "login_succeeded",
            f"Login via {provider_id}",
            provider_id=provider_id,
            session_id=session_id,
            metadata={"subject": mask_token(subject_id), "resumed_session": resumed},
        )

    async def log_login_failed(self, provider_id: str, error_code: str, message: str):
        await self.record(
            "login_failed",
            f"Login via {provider_id} failed",
            severity="warning",
            provider_id=provider_id,
            description=message,
            metadata={"error": error_code},
        )

    async def log_state_mismatch(self, provider_id: str, state: str):
        await self.record(
            "state_mismatch",
            "Unknown, expired or replayed login state",
            severity="critical",
            provider_id=provider_id,
            metadata={"state": mask_token(state)},
        )

    async def log_token_validation_failed(self, provider_id: str, reason: str):
        await self.record(
            "token_validation_failed",
            f"Identity token from {provider_id} rejected",
            severity="critical",
            provider_id=provider_id,
            metadata={"reason": reason},
        )

    async def log_account_linked(self, session_id: str, provider_id: str, subject_id: str):
        await self.record(
            "account_linked",
            f"Linked {provider_id} account",
            provider_id=provider_id,
            session_id=session_id,
            metadata={"subject": mask_token(subject_id)},
        )

    async def log_account_unlinked(self, session_id: str, provider_id: str):
        await self.record(
            "account_unlinked",
            f"Unlinked {provider_id} account",
            provider_id=provider_id,
            session_id=session_id,
        )

    async def log_session_refreshed(self, session_id: str, provider_id: str | None):
        await self.record(
            "session_refreshed", "Session refreshed", provider_id=provider_id, session_id=session_id
        )

    async def log_session_expired(self, session_id: str, reason: str):
        await self.record(
            "session_expired",
            "Session expired",
            severity="warning",
            session_id=session_id,
            metadata={"reason": reason},
        )

    async def log_logout(self, session_id: str):
        await self.record("logout", "Session logged out", session_id=session_id)


class NullAuditLogger(AuditLogger):
    """Audit logger that only writes to the application log."""

    def __init__(self):
        pass

    async def record(
        self,
        event_type: str,
        title: str,
        *,
        severity: str = "info",
        provider_id: str | None = None,
        session_id: str | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        logger.info("Audit %s: %s (provider=%s)", event_type, title, provider_id)

    async def purge_older_than(self, days: int) -> int:
        return 0
