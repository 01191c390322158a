"""Authorization request model for in-flight OAuth2/OIDC logins."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from multiauth.db import Base


class AuthorizationRequestRecord(Base):
    """Outstanding login attempt keyed by its anti-forgery state.

    Holds the nonce and PKCE verifier for the callback. Rows are one-time
    use and expire after ``state_ttl_minutes``.
    """

    __tablename__ = "authorization_requests"

    state: Mapped[str] = mapped_column(String(128), primary_key=True, nullable=False)
    provider_id: Mapped[str] = mapped_column(String(64), nullable=False)
    nonce: Mapped[str] = mapped_column(String(128), nullable=False)
    code_verifier: Mapped[str | None] = mapped_column(String(128), nullable=True)
    code_challenge: Mapped[str | None] = mapped_column(String(128), nullable=True)
    redirect_uri: Mapped[str] = mapped_column(String(512), nullable=False)
    return_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    extra_params: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_authorization_requests_expires_at", "expires_at"),)
