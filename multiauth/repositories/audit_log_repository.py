"""Audit log repository for authentication events."""

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from multiauth.models import AuditLog
from multiauth.utils.timezone import get_now


class AuditLogRepository:
    """Repository for AuditLog model."""

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository.

        Args:
            db: AsyncSession database session
        """
        self.db = db

    async def create(
        self,
        event_type: str,
        severity: str,
        title: str,
        description: str | None = None,
        provider_id: str | None = None,
        session_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> AuditLog:
        """
        Create a new audit log entry.

        Args:
            event_type: Type of event (login_succeeded, state_mismatch, etc.)
            severity: Severity level (info, warning, critical)
            title: Brief event summary
            description: Detailed description (optional)
            provider_id: Provider involved, if any
            session_id: Session involved, if any
            metadata: Event-specific data dictionary (already redacted)
            timestamp: Event timestamp (defaults to now)

        Returns:
            Created AuditLog instance
        """
        if timestamp is None:
            timestamp = get_now()

        entry = AuditLog(
            event_type=event_type,
            severity=severity,
            title=title,
            description=description,
            provider_id=provider_id,
            session_id=session_id,
            event_metadata=metadata or {},
            timestamp=timestamp,
        )

        self.db.add(entry)
        await self.db.commit()
        await self.db.refresh(entry)
        return entry

    async def get_recent(
        self,
        limit: int = 50,
        event_type_filter: str | None = None,
        session_id_filter: str | None = None,
    ) -> list[AuditLog]:
        """
        Get recent audit entries, newest first.

        Args:
            limit: Maximum number of entries to return
            event_type_filter: Filter by event type (optional)
            session_id_filter: Filter by session id (optional)
        """
        query = select(AuditLog)
        if event_type_filter:
            query = query.where(AuditLog.event_type == event_type_filter)
        if session_id_filter:
            query = query.where(AuditLog.session_id == session_id_filter)

        query = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def delete_older_than(self, days: int) -> int:
        """
        Delete audit entries older than specified days.

        Returns:
            Number of deleted records
        """
        cutoff_date = get_now() - timedelta(days=days)

        stmt = delete(AuditLog).where(AuditLog.timestamp < cutoff_date)
        result = await self.db.execute(stmt)
        await self.db.commit()

        return result.rowcount  # type: ignore[union-attr]
