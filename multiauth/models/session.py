"""Session and linked-account models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from multiauth.db import Base


class SessionRecord(Base):
    """Authenticated session row.

    ``version`` is bumped on every write; updates are conditional on the
    version the writer read (optimistic concurrency).
    """

    __tablename__ = "auth_sessions"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True, nullable=False)
    primary_provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    primary_subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    identities: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="authenticated")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (Index("idx_auth_sessions_expires_at", "expires_at"),)


class LinkedAccountRecord(Base):
    """(provider, subject) attached to a session.

    The unique constraint keeps one provider identity from silently attaching
    to two sessions.
    """

    __tablename__ = "linked_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(128),
        ForeignKey("auth_sessions.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    linked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("provider_id", "subject_id", name="uq_linked_accounts_provider_subject"),
    )
