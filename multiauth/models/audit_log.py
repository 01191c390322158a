"""Audit log model for security-relevant authentication events."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from multiauth.db import Base
from multiauth.utils.timezone import get_now


class AuditLog(Base):
    """Audit trail for logins, token rejections, linking and logout."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_timestamp", "timestamp"),
        Index("ix_audit_event_type", "event_type"),
        Index("ix_audit_session_id", "session_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # login_succeeded, login_failed, state_mismatch, token_validation_failed,
    # account_linked, account_unlinked, session_refreshed, session_expired, logout
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String, nullable=False, default="info")  # info, warning, critical

    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Redacted event-specific data, e.g. {"reason": "nonce_mismatch"}
    event_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=get_now, nullable=False)
