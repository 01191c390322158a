"""Provider-specific authorization URL construction."""

import logging
from urllib.parse import quote, urlencode, urlparse

from multiauth.config import Settings
from multiauth.errors import ConfigurationError, InvalidReturnUrl
from multiauth.providers.descriptor import PkceMode, ProviderDescriptor, ResponseMode
from multiauth.providers.registry import ProviderRegistry
from multiauth.schemas.auth import AuthorizationRequest
from multiauth.services.pkce import generate_code_verifier
from multiauth.services.state_store import AntiForgeryStateStore
from multiauth.utils.log_redaction import mask_token, sanitize_for_log

logger = logging.getLogger(__name__)

# Parameters owned by the flow itself; callers cannot override them
RESERVED_PARAMS = frozenset(
    {
        "client_id",
        "redirect_uri",
        "response_type",
        "response_mode",
        "scope",
        "state",
        "nonce",
        "code_challenge",
        "code_challenge_method",
    }
)

# Extra parameter that selects a named policy on multi-policy providers
POLICY_PARAM = "p"


def _origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def validate_return_url(
    return_url: str | None,
    base_url: str,
    allowed_origins: list[str] | None = None,
) -> str | None:
    """Reject open-redirect targets.

    Relative paths (single leading slash) are always allowed. Absolute URLs
    must be http(s) and match an allowed origin, or ``base_url``'s origin
    when no origins are configured.

    Raises:
        InvalidReturnUrl: If the URL is not an allowed destination
    """
    if return_url is None or return_url == "":
        return None

    if any(ch in return_url for ch in ("\r", "\n", "\t", "\\")):
        raise InvalidReturnUrl("Return URL contains illegal characters")

    if return_url.startswith("/"):
        # "//evil.com" is protocol-relative, not a path
        if return_url.startswith("//"):
            raise InvalidReturnUrl("Protocol-relative return URLs are not allowed")
        return return_url

    parsed = urlparse(return_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidReturnUrl(f"Unsupported return URL: {sanitize_for_log(return_url)[:200]}")

    allowed = {o.rstrip("/").lower() for o in (allowed_origins or [])} or {_origin(base_url)}
    if _origin(return_url) not in allowed:
        raise InvalidReturnUrl(f"Return URL origin {_origin(return_url)} is not allowed")

    return return_url


class AuthorizationUrlBuilder:
    """Builds authorization URLs and records the matching login request."""

    def __init__(
        self,
        registry: ProviderRegistry,
        state_store: AntiForgeryStateStore,
        settings: Settings,
        pkce_when_optional: bool = True,
    ):
        self.registry = registry
        self.state_store = state_store
        self.settings = settings
        self.pkce_when_optional = pkce_when_optional

    def _uses_pkce(self, descriptor: ProviderDescriptor) -> bool:
        if descriptor.pkce is PkceMode.REQUIRED:
            return True
        return descriptor.pkce is PkceMode.OPTIONAL and self.pkce_when_optional

    def _split_extra_params(
        self, descriptor: ProviderDescriptor, extra_params: dict[str, str] | None
    ) -> tuple[dict[str, str], dict[str, str]]:
        """Split caller parameters into (stored-with-request, sent-to-provider)."""
        stored: dict[str, str] = {}
        forwarded: dict[str, str] = {}
        for key, value in (extra_params or {}).items():
            if key in RESERVED_PARAMS:
                logger.warning(
                    "Ignoring reserved authorization parameter %s for %s",
                    sanitize_for_log(key),
                    descriptor.provider_id,
                )
                continue
            if key == POLICY_PARAM and descriptor.supports_policies:
                stored[POLICY_PARAM] = value
                continue
            forwarded[key] = value
        return stored, forwarded

    async def build(
        self,
        provider_id: str,
        return_url: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> tuple[str, AuthorizationRequest]:
        """Create the authorization URL for ``provider_id``.

        Args:
            provider_id: Registered provider id
            return_url: Where to send the user after login
            extra_params: Provider extras, e.g. ``{"p": "B2C_1_reset"}`` or ``{"prompt": "login"}``

        Returns:
            Tuple of (authorization_url, stored AuthorizationRequest)

        Raises:
            UnknownProvider, ProviderDisabled, InvalidReturnUrl
        """
        descriptor = self.registry.require_enabled(provider_id)
        if not descriptor.client_id:
            raise ConfigurationError(f"Provider '{provider_id}' has no client id configured")

        return_url = validate_return_url(
            return_url, self.settings.base_url, self.settings.allowed_return_origins
        )
        stored, forwarded = self._split_extra_params(descriptor, extra_params)
        redirect_uri = self.settings.redirect_uri_for(provider_id)

        code_verifier = generate_code_verifier() if self._uses_pkce(descriptor) else None
        request = await self.state_store.issue(
            provider_id,
            return_url,
            redirect_uri=redirect_uri,
            extra_params=stored,
            code_verifier=code_verifier,
        )

        params: dict[str, str] = {
            "client_id": descriptor.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": descriptor.join_scopes(descriptor.default_scopes),
            "state": request.state,
        }
        if descriptor.uses_identity_token:
            params["nonce"] = request.nonce
        # query is the default for the code flow and is not sent explicitly
        if descriptor.response_mode is not ResponseMode.QUERY:
            params["response_mode"] = descriptor.response_mode.value
        if request.code_challenge:
            params["code_challenge"] = request.code_challenge
            params["code_challenge_method"] = "S256"
        params.update(dict(descriptor.extra_authorization_params))
        params.update(forwarded)

        endpoint = descriptor.authorization_endpoint_for(stored.get(POLICY_PARAM))
        auth_url = f"{endpoint}?{urlencode(params, quote_via=quote)}"

        logger.info(
            "Created authorization URL for %s (state: %s)", provider_id, mask_token(request.state)
        )
        return auth_url, request

    async def build_password_reset(self, provider_id: str, return_url: str | None = None) -> str:
        """Start a login with the provider's password-reset policy."""
        descriptor = self.registry.require_enabled(provider_id)
        if not descriptor.password_reset_policy:
            raise ConfigurationError(f"Provider '{provider_id}' does not support password reset")
        auth_url, _ = await self.build(
            provider_id, return_url, {POLICY_PARAM: descriptor.password_reset_policy}
        )
        return auth_url

    def build_logout_url(
        self,
        provider_id: str,
        return_url: str | None = None,
        policy: str | None = None,
    ) -> str | None:
        """Provider end-session URL, or None if the provider has none."""
        descriptor = self.registry.get(provider_id)
        endpoint = descriptor.end_session_endpoint_for(policy)
        if endpoint is None:
            return None

        params = {}
        return_url = validate_return_url(
            return_url, self.settings.base_url, self.settings.allowed_return_origins
        )
        if return_url:
            if return_url.startswith("/"):
                return_url = f"{self.settings.base_url.rstrip('/')}{return_url}"
            params["post_logout_redirect_uri"] = return_url

        if not params:
            return endpoint
        return f"{endpoint}?{urlencode(params, quote_via=quote)}"
