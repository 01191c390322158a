"""Authentication error taxonomy.

Every error raised across the authentication flow derives from ``AuthError``
and carries a stable machine-readable code, a human message and a retryable
flag. ``to_dict()`` is safe to hand to an HTTP layer: details never include
tokens, secrets or tracebacks.
"""

from enum import Enum
from typing import Any


class AuthErrorCode(Enum):
    """Stable error codes surfaced to callers."""

    UNKNOWN_PROVIDER = "unknown_provider"
    PROVIDER_DISABLED = "provider_disabled"
    INVALID_RETURN_URL = "invalid_return_url"
    NETWORK_ERROR = "network_error"
    INVALID_GRANT = "invalid_grant"
    TOKEN_VALIDATION_FAILED = "token_validation_failed"
    STATE_MISMATCH = "state_mismatch"
    IDENTITY_EXTRACTION_FAILED = "identity_extraction_failed"
    PROVIDER_ALREADY_LINKED = "provider_already_linked"
    IDENTITY_ALREADY_LINKED_ELSEWHERE = "identity_already_linked_elsewhere"
    CANNOT_UNLINK_LAST_IDENTITY = "cannot_unlink_last_identity"
    ACCOUNT_LINKING_DISABLED = "account_linking_disabled"
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_EXPIRED = "session_expired"
    SESSION_CONFLICT = "session_conflict"
    MISSING_SECRET = "missing_secret"
    CONFIGURATION_ERROR = "configuration_error"


class TokenValidationReason(Enum):
    """Why an identity token was rejected."""

    MALFORMED = "malformed"
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"
    UNKNOWN_KEY = "unknown_key"
    BAD_SIGNATURE = "bad_signature"
    ISSUER_MISMATCH = "issuer_mismatch"
    AUDIENCE_MISMATCH = "audience_mismatch"
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    ISSUED_IN_FUTURE = "issued_in_future"
    NONCE_MISMATCH = "nonce_mismatch"
    MISSING_CLAIM = "missing_claim"


class AuthError(Exception):
    """Base class for all authentication errors."""

    code: AuthErrorCode = AuthErrorCode.CONFIGURATION_ERROR
    retryable: bool = False
    default_message: str = "Authentication failed"

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class UnknownProvider(AuthError):
    code = AuthErrorCode.UNKNOWN_PROVIDER
    default_message = "Unknown authentication provider"

    def __init__(self, provider_id: str):
        super().__init__(
            f"No provider registered under '{provider_id}'",
            {"provider_id": provider_id},
        )


class ProviderDisabled(AuthError):
    code = AuthErrorCode.PROVIDER_DISABLED
    default_message = "Authentication provider is disabled"

    def __init__(self, provider_id: str):
        super().__init__(
            f"Provider '{provider_id}' is disabled by configuration",
            {"provider_id": provider_id},
        )


class InvalidReturnUrl(AuthError):
    code = AuthErrorCode.INVALID_RETURN_URL
    default_message = "Return URL is not allowed"


class NetworkError(AuthError):
    """Transport failure talking to a provider. Safe to retry."""

    code = AuthErrorCode.NETWORK_ERROR
    retryable = True
    default_message = "Could not reach the identity provider"


class InvalidGrant(AuthError):
    """The provider rejected the authorization code or refresh token."""

    code = AuthErrorCode.INVALID_GRANT
    default_message = "The identity provider rejected the grant"

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        error: str | None = None,
        error_description: str | None = None,
    ):
        details: dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if error:
            details["error"] = error
        if error_description:
            details["error_description"] = error_description
        super().__init__(message, details)
        self.status_code = status_code
        self.error = error
        self.error_description = error_description


class TokenValidationError(AuthError):
    """Identity token failed verification. Never downgraded to success."""

    code = AuthErrorCode.TOKEN_VALIDATION_FAILED
    default_message = "Identity token validation failed"

    def __init__(self, reason: TokenValidationReason, message: str | None = None):
        super().__init__(
            message or f"Identity token rejected: {reason.value}",
            {"reason": reason.value},
        )
        self.reason = reason


class StateMismatchError(AuthError):
    """Unknown, expired or already-consumed anti-forgery state."""

    code = AuthErrorCode.STATE_MISMATCH
    default_message = "Login request is invalid or has already been used"


class IdentityExtractionError(AuthError):
    code = AuthErrorCode.IDENTITY_EXTRACTION_FAILED
    default_message = "Could not extract an identity from the provider response"


class ProviderAlreadyLinked(AuthError):
    code = AuthErrorCode.PROVIDER_ALREADY_LINKED
    default_message = "This session already has an account for that provider"


class IdentityAlreadyLinkedElsewhere(AuthError):
    code = AuthErrorCode.IDENTITY_ALREADY_LINKED_ELSEWHERE
    default_message = "This account is already linked to another session"


class CannotUnlinkLastIdentity(AuthError):
    code = AuthErrorCode.CANNOT_UNLINK_LAST_IDENTITY
    default_message = "A session must keep at least one linked account"


class AccountLinkingDisabled(AuthError):
    code = AuthErrorCode.ACCOUNT_LINKING_DISABLED
    default_message = "Account linking is disabled"


class SessionNotFound(AuthError):
    code = AuthErrorCode.SESSION_NOT_FOUND
    default_message = "Session not found"


class SessionExpired(AuthError):
    code = AuthErrorCode.SESSION_EXPIRED
    default_message = "Session has expired, please sign in again"


class SessionConflict(AuthError):
    """Lost an optimistic-concurrency race on a session. Retry once."""

    code = AuthErrorCode.SESSION_CONFLICT
    retryable = True
    default_message = "Session was modified concurrently"


class MissingSecretError(AuthError):
    code = AuthErrorCode.MISSING_SECRET
    default_message = "Required secret is not configured"

    def __init__(self, key: str):
        # Only the secret's name is exposed, never a value
        super().__init__(f"Required secret '{key}' could not be resolved", {"key": key})


class ConfigurationError(AuthError):
    code = AuthErrorCode.CONFIGURATION_ERROR
    default_message = "Authentication is misconfigured"
