"""Authentication flow schemas: requests, tokens, identities and sessions."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, SecretStr, model_validator

from multiauth.utils.timezone import ensure_aware, get_now


class AuthorizationRequest(BaseModel):
    """A login attempt waiting for its provider callback.

    Consumed exactly once by the matching callback; the ``state`` is looked up
    by exact match only.
    """

    provider_id: str
    state: str
    nonce: str
    code_verifier: str | None = Field(default=None, repr=False)
    code_challenge: str | None = None
    redirect_uri: str
    return_url: str | None = None
    extra_params: dict[str, str] = Field(default_factory=dict)
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the request is past its expiry."""
        now = now or get_now()
        return now >= ensure_aware(self.expires_at)


class TokenSet(BaseModel):
    """Tokens returned by a provider token endpoint.

    Token values are ``SecretStr`` so they never render in logs or reprs.
    """

    access_token: SecretStr
    refresh_token: SecretStr | None = None
    id_token: SecretStr | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: str | None = None


class Identity(BaseModel):
    """Provider-independent user identity."""

    subject_id: str = Field(..., min_length=1)
    provider_id: str
    email: str | None = None
    email_verified: bool = False
    display_name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    picture_url: str | None = None
    # Audit/debug only, never used for authorization decisions
    raw_claims: dict[str, Any] = Field(default_factory=dict, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.provider_id, self.subject_id)


class SessionStatus(str, Enum):
    """Lifecycle states of a session."""

    AUTHENTICATED = "authenticated"
    REFRESHED = "refreshed"
    EXPIRED = "expired"


class Session(BaseModel):
    """An authenticated session and the identities linked to it.

    ``identities`` is keyed by provider id, so a session holds at most one
    identity per provider; the primary identity is one of them.
    """

    session_id: str
    primary_provider_id: str
    identities: dict[str, Identity]
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    refresh_token: SecretStr | None = None
    refresh_provider_id: str | None = None
    # provider_id -> when that identity was attached
    linked_at: dict[str, datetime] = Field(default_factory=dict)
    status: SessionStatus = SessionStatus.AUTHENTICATED
    version: int = 0

    @model_validator(mode="after")
    def _check_invariants(self) -> "Session":
        if ensure_aware(self.expires_at) <= ensure_aware(self.created_at):
            raise ValueError("expires_at must be after created_at")
        if self.primary_provider_id not in self.identities:
            raise ValueError("primary identity must be one of the session identities")
        for provider_id, identity in self.identities.items():
            if identity.provider_id != provider_id:
                raise ValueError(f"identity for '{identity.provider_id}' stored under '{provider_id}'")
        return self

    @property
    def primary_identity(self) -> Identity:
        return self.identities[self.primary_provider_id]

    @property
    def is_valid(self) -> bool:
        return self.status in (SessionStatus.AUTHENTICATED, SessionStatus.REFRESHED)

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or get_now()
        return now >= ensure_aware(self.expires_at)

    def linked_accounts(self) -> list["LinkedAccount"]:
        """Return the (session, provider, subject) tuples this session owns."""
        return [
            LinkedAccount(
                session_id=self.session_id,
                provider_id=identity.provider_id,
                subject_id=identity.subject_id,
                is_primary=identity.provider_id == self.primary_provider_id,
                linked_at=self.linked_at.get(identity.provider_id, self.created_at),
            )
            for identity in self.identities.values()
        ]


class LinkedAccount(BaseModel):
    """Link record; unique on (provider_id, subject_id) across all sessions."""

    session_id: str
    provider_id: str
    subject_id: str
    is_primary: bool = False
    linked_at: datetime


class LoginResult(BaseModel):
    """Outcome of a completed login callback."""

    identity: Identity
    session: Session
    return_url: str | None = None
