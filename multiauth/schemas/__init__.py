"""Pydantic schemas for multiauth."""

from multiauth.schemas.auth import (
    AuthorizationRequest,
    Identity,
    LinkedAccount,
    LoginResult,
    Session,
    SessionStatus,
    TokenSet,
)
from multiauth.schemas.provider import ProviderCapabilities, ProviderInfo, ProviderValidationResult

__all__ = [
    "AuthorizationRequest",
    "Identity",
    "LinkedAccount",
    "LoginResult",
    "ProviderCapabilities",
    "ProviderInfo",
    "ProviderValidationResult",
    "Session",
    "SessionStatus",
    "TokenSet",
]
