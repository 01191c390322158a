"""Provider registry and the built-in provider catalog.

Descriptors are created once at process start from ``Settings`` and never
mutated afterwards.
"""

import logging

from multiauth.config import Settings
from multiauth.errors import ProviderDisabled, UnknownProvider
from multiauth.providers.descriptor import (
    ClientAuthMethod,
    IdentityChannel,
    PkceMode,
    ProviderDescriptor,
    ResponseMode,
    ScopeDelimiter,
)
from multiauth.schemas.provider import ProviderInfo

logger = logging.getLogger(__name__)

GOOGLE = "google"
FACEBOOK = "facebook"
APPLE = "apple"
AZURE_B2C = "azure_b2c"

FACEBOOK_GRAPH_VERSION = "v18.0"
FACEBOOK_PROFILE_FIELDS = "id,email,first_name,last_name,name,picture.type(large)"

# Default scopes for each provider
DEFAULT_SCOPES = {
    GOOGLE: ("openid", "email", "profile"),
    FACEBOOK: ("email", "public_profile"),
    APPLE: ("name", "email"),
    AZURE_B2C: ("openid", "profile", "offline_access"),
}


def google_descriptor(settings: Settings) -> ProviderDescriptor:
    return ProviderDescriptor(
        provider_id=GOOGLE,
        display_name="Google",
        authorization_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
        token_endpoint="https://oauth2.googleapis.com/token",
        jwks_uri="https://www.googleapis.com/oauth2/v3/certs",
        userinfo_endpoint="https://openidconnect.googleapis.com/v1/userinfo",
        issuers=("https://accounts.google.com", "accounts.google.com"),
        client_id=settings.google_client_id,
        client_secret_key=settings.google_client_secret_key,
        default_scopes=tuple(settings.google_scopes or DEFAULT_SCOPES[GOOGLE]),
        scope_delimiter=ScopeDelimiter.SPACE,
        response_mode=ResponseMode.QUERY,
        identity_channel=IdentityChannel.USERINFO,
        pkce=PkceMode.OPTIONAL,
        # Google only returns a refresh token for offline access
        extra_authorization_params=(("access_type", "offline"),),
        supports_refresh_tokens=True,
        enabled=settings.google_enabled,
    )


def facebook_descriptor(settings: Settings) -> ProviderDescriptor:
    graph = f"https://graph.facebook.com/{FACEBOOK_GRAPH_VERSION}"
    return ProviderDescriptor(
        provider_id=FACEBOOK,
        display_name="Facebook",
        authorization_endpoint=f"https://www.facebook.com/{FACEBOOK_GRAPH_VERSION}/dialog/oauth",
        token_endpoint=f"{graph}/oauth/access_token",
        userinfo_endpoint=f"{graph}/me",
        # Graph API requires explicit field selection
        userinfo_params=(("fields", FACEBOOK_PROFILE_FIELDS),),
        client_id=settings.facebook_client_id,
        client_secret_key=settings.facebook_client_secret_key,
        default_scopes=tuple(settings.facebook_scopes or DEFAULT_SCOPES[FACEBOOK]),
        scope_delimiter=ScopeDelimiter.COMMA,
        response_mode=ResponseMode.QUERY,
        identity_channel=IdentityChannel.USERINFO,
        pkce=PkceMode.OPTIONAL,
        enabled=settings.facebook_enabled,
    )


def apple_descriptor(settings: Settings) -> ProviderDescriptor:
    return ProviderDescriptor(
        provider_id=APPLE,
        display_name="Apple",
        authorization_endpoint="https://appleid.apple.com/auth/authorize",
        token_endpoint="https://appleid.apple.com/auth/token",
        jwks_uri="https://appleid.apple.com/auth/keys",
        issuers=("https://appleid.apple.com",),
        client_id=settings.apple_client_id,
        client_secret_key=settings.apple_client_secret_key,
        default_scopes=tuple(settings.apple_scopes or DEFAULT_SCOPES[APPLE]),
        scope_delimiter=ScopeDelimiter.SPACE,
        # Apple requires form_post whenever name or email scopes are requested
        response_mode=ResponseMode.FORM_POST,
        identity_channel=IdentityChannel.ID_TOKEN,
        pkce=PkceMode.UNSUPPORTED,
        client_auth=ClientAuthMethod.SIGNED_JWT,
        signing_team_id=settings.apple_team_id,
        signing_key_id=settings.apple_key_id,
        supports_refresh_tokens=True,
        enabled=settings.apple_enabled,
    )


def azure_b2c_descriptor(settings: Settings) -> ProviderDescriptor:
    tenant = settings.azure_b2c_tenant
    tenant_name = tenant.replace(".onmicrosoft.com", "")
    domain = settings.azure_b2c_custom_domain or f"{tenant_name}.b2clogin.com"
    authority = f"https://{domain}/{tenant}/{{policy}}"
    return ProviderDescriptor(
        provider_id=AZURE_B2C,
        display_name="Azure B2C",
        authorization_endpoint=f"{authority}/oauth2/v2.0/authorize",
        token_endpoint=f"{authority}/oauth2/v2.0/token",
        jwks_uri=f"{authority}/discovery/v2.0/keys",
        end_session_endpoint=f"{authority}/oauth2/v2.0/logout",
        issuers=(f"https://{domain}/{settings.azure_b2c_tenant_id}/v2.0/",),
        client_id=settings.azure_b2c_client_id,
        client_secret_key=settings.azure_b2c_client_secret_key,
        default_scopes=tuple(settings.azure_b2c_scopes or DEFAULT_SCOPES[AZURE_B2C]),
        scope_delimiter=ScopeDelimiter.SPACE,
        response_mode=ResponseMode.QUERY,
        # B2C delivers the profile inside the id_token, there is no userinfo call
        identity_channel=IdentityChannel.ID_TOKEN,
        pkce=PkceMode.REQUIRED,
        default_policy=settings.azure_b2c_signin_policy,
        password_reset_policy=settings.azure_b2c_reset_password_policy or None,
        profile_edit_policy=settings.azure_b2c_edit_profile_policy or None,
        supports_refresh_tokens=True,
        enabled=settings.azure_b2c_enabled,
    )


BUILTIN_PROVIDERS = {
    GOOGLE: google_descriptor,
    FACEBOOK: facebook_descriptor,
    APPLE: apple_descriptor,
    AZURE_B2C: azure_b2c_descriptor,
}


class ProviderRegistry:
    """Lookup of provider descriptors by id."""

    def __init__(self, descriptors: list[ProviderDescriptor] | None = None):
        self._descriptors: dict[str, ProviderDescriptor] = {}
        for descriptor in descriptors or []:
            self.register(descriptor)

    def register(self, descriptor: ProviderDescriptor) -> None:
        """Register a provider. Ids are unique."""
        if descriptor.provider_id in self._descriptors:
            raise ValueError(f"Provider '{descriptor.provider_id}' is already registered")
        self._descriptors[descriptor.provider_id] = descriptor
        logger.debug(
            "Registered provider %s (enabled=%s)", descriptor.provider_id, descriptor.enabled
        )

    def get(self, provider_id: str) -> ProviderDescriptor:
        """Return the descriptor, enabled or not.

        Raises:
            UnknownProvider: If no descriptor is registered under ``provider_id``
        """
        descriptor = self._descriptors.get(provider_id)
        if descriptor is None:
            raise UnknownProvider(provider_id)
        return descriptor

    def require_enabled(self, provider_id: str) -> ProviderDescriptor:
        """Return the descriptor if it can be used for a login.

        Raises:
            UnknownProvider: Unregistered provider id
            ProviderDisabled: Provider switched off by configuration
        """
        descriptor = self.get(provider_id)
        if not descriptor.enabled:
            raise ProviderDisabled(provider_id)
        return descriptor

    def all(self) -> list[ProviderDescriptor]:
        return list(self._descriptors.values())

    def enabled(self) -> list[ProviderDescriptor]:
        return [d for d in self._descriptors.values() if d.enabled]

    def describe(self) -> list[ProviderInfo]:
        """Public catalog of registered providers."""
        return [self._info(d) for d in self._descriptors.values()]

    def info(self, provider_id: str) -> ProviderInfo:
        """Public description of one provider; raises UnknownProvider."""
        return self._info(self.get(provider_id))

    @staticmethod
    def _info(descriptor: ProviderDescriptor) -> ProviderInfo:
        return ProviderInfo(
            provider_id=descriptor.provider_id,
            display_name=descriptor.display_name,
            enabled=descriptor.enabled,
            default_scopes=list(descriptor.default_scopes),
            capabilities=descriptor.capabilities(),
        )

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._descriptors


def build_registry(settings: Settings) -> ProviderRegistry:
    """Create the registry with every built-in provider."""
    registry = ProviderRegistry([factory(settings) for factory in BUILTIN_PROVIDERS.values()])
    enabled = [d.provider_id for d in registry.enabled()]
    logger.info(f"Provider registry ready ({len(enabled)} enabled: {', '.join(enabled) or 'none'})")
    return registry
