"""Authentication orchestrator: the operations exposed to the HTTP layer."""

import logging
from dataclasses import dataclass
from typing import Any

from multiauth.errors import (
    AccountLinkingDisabled,
    AuthError,
    InvalidGrant,
    MissingSecretError,
    StateMismatchError,
    TokenValidationError,
    TokenValidationReason,
)
from multiauth.providers.descriptor import ClientAuthMethod, IdentityChannel, ProviderDescriptor
from multiauth.providers.registry import ProviderRegistry
from multiauth.schemas.auth import AuthorizationRequest, Identity, LoginResult, Session, TokenSet
from multiauth.schemas.provider import ProviderCapabilities, ProviderInfo, ProviderValidationResult
from multiauth.services.audit import AuditLogger, NullAuditLogger
from multiauth.services.linking import AccountLinkingService
from multiauth.services.normalizer import UserInfoNormalizer
from multiauth.services.secrets import SecretProvider
from multiauth.services.session_manager import SessionManager
from multiauth.services.state_store import AntiForgeryStateStore
from multiauth.services.token_client import TokenExchangeClient
from multiauth.services.token_validator import IdentityTokenValidator
from multiauth.services.url_builder import POLICY_PARAM, AuthorizationUrlBuilder
from multiauth.utils.log_redaction import mask_token, sanitize_for_log

logger = logging.getLogger(__name__)

CAPABILITY_FLAGS = frozenset(
    name for name, field in ProviderCapabilities.model_fields.items() if field.annotation is bool
)


@dataclass
class _Authenticated:
    descriptor: ProviderDescriptor
    request: AuthorizationRequest
    tokens: TokenSet
    identity: Identity


def _has_empty_segment(url: str) -> bool:
    """True if a URL path has an empty segment, e.g. an unset tenant or policy."""
    _, _, rest = url.partition("://")
    return "//" in rest


class AuthOrchestrator:
    """Drives the authorization-code flow across all registered providers."""

    def __init__(
        self,
        registry: ProviderRegistry,
        state_store: AntiForgeryStateStore,
        url_builder: AuthorizationUrlBuilder,
        token_client: TokenExchangeClient,
        token_validator: IdentityTokenValidator,
        normalizer: UserInfoNormalizer,
        sessions: SessionManager,
        linking: AccountLinkingService,
        secret_provider: SecretProvider,
        audit: AuditLogger | None = None,
    ):
        self.registry = registry
        self.state_store = state_store
        self.url_builder = url_builder
        self.token_client = token_client
        self.token_validator = token_validator
        self.normalizer = normalizer
        self.sessions = sessions
        self.linking = linking
        self.secret_provider = secret_provider
        self.audit = audit or NullAuditLogger()

    # Login

    async def begin_login(
        self,
        provider_id: str,
        return_url: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """
        Start a login and return the provider authorization URL.

        Raises:
            UnknownProvider, ProviderDisabled, InvalidReturnUrl, ConfigurationError
        """
        auth_url, _ = await self.url_builder.build(provider_id, return_url, extra_params)
        return auth_url

    async def begin_password_reset(self, provider_id: str, return_url: str | None = None) -> str:
        """Start a flow with the provider's password-reset policy."""
        return await self.url_builder.build_password_reset(provider_id, return_url)

    async def complete_login(
        self,
        provider_id: str,
        code: str,
        state: str,
        error: str | None = None,
        error_description: str | None = None,
    ) -> LoginResult:
        """
        Handle the provider callback and establish a session.

        Args:
            provider_id: Provider the callback arrived for
            code: Authorization code
            state: Anti-forgery state from the callback
            error: Provider error parameter (e.g. ``access_denied``), if any
            error_description: Provider error description, if any

        Returns:
            LoginResult with the identity, session and post-login return URL

        Raises:
            StateMismatchError, InvalidGrant, NetworkError, TokenValidationError,
            IdentityExtractionError, UnknownProvider, ProviderDisabled
        """
        auth = await self._authenticate(provider_id, code, state, error, error_description)
        session, resumed = await self.sessions.create(auth.identity, auth.tokens)

        logger.info(
            "Login completed via %s (session: %s)", provider_id, mask_token(session.session_id)
        )
        await self.audit.log_login_succeeded(
            provider_id, session.session_id, auth.identity.subject_id, resumed
        )
        return LoginResult(identity=auth.identity, session=session, return_url=auth.request.return_url)

    async def _authenticate(
        self,
        provider_id: str,
        code: str,
        state: str,
        error: str | None = None,
        error_description: str | None = None,
    ) -> _Authenticated:
        descriptor = self.registry.require_enabled(provider_id)

        try:
            request = await self.state_store.consume(state)
        except StateMismatchError:
            await self.audit.log_state_mismatch(provider_id, state)
            raise

        try:
            if request.provider_id != provider_id:
                logger.warning(
                    "State issued for %s presented to %s callback",
                    request.provider_id,
                    sanitize_for_log(provider_id),
                )
                await self.audit.log_state_mismatch(provider_id, state)
                raise StateMismatchError("Login request was issued for a different provider")

            if error:
                logger.warning(
                    "Provider %s returned error: %s", provider_id, sanitize_for_log(error)
                )
                raise InvalidGrant(
                    f"Sign-in with {descriptor.display_name} was not completed",
                    error=error,
                    error_description=error_description,
                )

            tokens = await self.token_client.exchange_code(descriptor, code, request)
            claims = await self._verify_identity_token(descriptor, tokens, request)
            identity = await self.normalizer.normalize(descriptor, tokens, claims)
        except TokenValidationError as e:
            await self.audit.log_token_validation_failed(provider_id, e.reason.value)
            raise
        except AuthError as e:
            if not isinstance(e, StateMismatchError):
                await self.audit.log_login_failed(provider_id, e.code.value, e.message)
            raise

        return _Authenticated(descriptor, request, tokens, identity)

    async def _verify_identity_token(
        self,
        descriptor: ProviderDescriptor,
        tokens: TokenSet,
        request: AuthorizationRequest,
    ) -> dict[str, Any] | None:
        if not descriptor.uses_identity_token:
            return None
        if tokens.id_token is None:
            if descriptor.identity_channel is IdentityChannel.ID_TOKEN:
                raise TokenValidationError(
                    TokenValidationReason.MALFORMED,
                    f"{descriptor.display_name} returned no identity token",
                )
            # Profile comes from userinfo; nothing to verify
            return None

        return await self.token_validator.validate(
            tokens.id_token.get_secret_value(),
            descriptor,
            nonce=request.nonce,
            policy=request.extra_params.get(POLICY_PARAM),
        )

    # Sessions

    async def validate_session(self, session_id: str) -> Session:
        """Return the session if valid; raises SessionNotFound or SessionExpired."""
        return await self.sessions.validate(session_id)

    async def refresh_session(self, session_id: str) -> Session:
        return await self.sessions.refresh(session_id)

    async def logout(self, session_id: str) -> None:
        """End the session. Always succeeds."""
        await self.sessions.logout(session_id)

    def get_logout_url(
        self,
        provider_id: str,
        return_url: str | None = None,
        policy: str | None = None,
    ) -> str | None:
        """Provider end-session URL, or None if the provider has none."""
        return self.url_builder.build_logout_url(provider_id, return_url, policy)

    # Linking

    async def link_account(
        self,
        session_id: str,
        provider_id: str,
        code: str,
        state: str,
        replace_existing: bool = False,
    ) -> Session:
        """
        Authenticate with another provider and attach that identity to the session.

        Raises:
            AccountLinkingDisabled, SessionNotFound, SessionExpired, plus every
            error of ``complete_login`` and ``AccountLinkingService.link``
        """
        if not self.linking.enabled:
            raise AccountLinkingDisabled()
        await self.sessions.validate(session_id)

        auth = await self._authenticate(provider_id, code, state)
        return await self.linking.link(session_id, auth.identity, replace_existing)

    async def unlink_account(self, session_id: str, provider_id: str) -> Session:
        return await self.linking.unlink(session_id, provider_id)

    # Provider catalog

    def list_providers(
        self, enabled_only: bool = False, capability: str | None = None
    ) -> list[ProviderInfo]:
        """
        Describe registered providers.

        Args:
            enabled_only: Skip disabled providers
            capability: Keep only providers with this capability set, e.g.
                ``"supports_refresh_tokens"``

        Raises:
            ValueError: If ``capability`` is not a known capability flag
        """
        if capability is not None and capability not in CAPABILITY_FLAGS:
            raise ValueError(f"Unknown provider capability: {capability}")

        providers = self.registry.describe()
        if enabled_only:
            providers = [p for p in providers if p.enabled]
        if capability is not None:
            providers = [p for p in providers if getattr(p.capabilities, capability)]
        return providers

    def get_provider_info(self, provider_id: str) -> ProviderInfo:
        return self.registry.info(provider_id)

    def validate_provider_config(self, provider_id: str) -> ProviderValidationResult:
        """
        Check that a provider is usable: ids, secret and endpoint templates.

        Raises:
            UnknownProvider: If no provider is registered under ``provider_id``
        """
        descriptor = self.registry.get(provider_id)
        errors: list[str] = []

        if not descriptor.client_id:
            errors.append("client id is not configured")

        try:
            self.secret_provider.get_required_secret(descriptor.client_secret_key)
        except MissingSecretError:
            errors.append(f"secret '{descriptor.client_secret_key}' is not available")

        if descriptor.client_auth is ClientAuthMethod.SIGNED_JWT:
            if not descriptor.signing_team_id:
                errors.append("team id is not configured")
            if not descriptor.signing_key_id:
                errors.append("signing key id is not configured")

        if descriptor.supports_policies and not descriptor.default_policy:
            errors.append("default policy is not configured")

        urls = [descriptor.authorization_endpoint_for(), descriptor.token_endpoint_for()]
        jwks_uri = descriptor.jwks_uri_for()
        if jwks_uri:
            urls.append(jwks_uri)
            if not descriptor.issuers:
                errors.append("no expected issuer configured")
        urls.extend(descriptor.issuers)
        if any(_has_empty_segment(url) for url in urls):
            errors.append("endpoint or issuer is incomplete (tenant or policy missing)")

        if descriptor.identity_channel is IdentityChannel.USERINFO and not descriptor.userinfo_endpoint:
            errors.append("userinfo endpoint is not configured")

        return ProviderValidationResult(provider_id=provider_id, valid=not errors, errors=errors)
