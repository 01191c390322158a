"""Provider descriptors: the static, per-provider facts the flow is driven by.

Providers are modelled as data rather than subclasses. Quirks (scope
delimiter, response mode, where the identity comes from) are flags on the
descriptor and select small strategies elsewhere.
"""

from dataclasses import dataclass
from enum import Enum

from multiauth.schemas.provider import ProviderCapabilities


class ScopeDelimiter(str, Enum):
    """How the ``scope`` parameter is joined."""

    SPACE = "space"
    COMMA = "comma"

    @property
    def separator(self) -> str:
        return " " if self is ScopeDelimiter.SPACE else ","


class ResponseMode(str, Enum):
    """How the provider returns the authorization code."""

    QUERY = "query"
    FRAGMENT = "fragment"
    FORM_POST = "form_post"


class IdentityChannel(str, Enum):
    """Where the user's profile is delivered."""

    ID_TOKEN = "id_token"  # claims only inside the identity token
    USERINFO = "userinfo"  # separate authenticated profile endpoint


class PkceMode(str, Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"
    UNSUPPORTED = "unsupported"


class ClientAuthMethod(str, Enum):
    """How the client authenticates at the token endpoint."""

    CLIENT_SECRET_POST = "client_secret_post"
    # Apple: client_secret is an ES256 JWT signed with the team's private key
    SIGNED_JWT = "signed_jwt"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Immutable description of one identity provider.

    Endpoint strings may contain a ``{policy}`` placeholder for providers
    that support several authentication policies (Azure AD B2C).
    """

    provider_id: str
    display_name: str
    authorization_endpoint: str
    token_endpoint: str
    client_id: str
    client_secret_key: str
    default_scopes: tuple[str, ...]
    scope_delimiter: ScopeDelimiter = ScopeDelimiter.SPACE
    response_mode: ResponseMode = ResponseMode.QUERY
    identity_channel: IdentityChannel = IdentityChannel.USERINFO
    pkce: PkceMode = PkceMode.OPTIONAL
    jwks_uri: str | None = None
    userinfo_endpoint: str | None = None
    userinfo_params: tuple[tuple[str, str], ...] = ()
    issuers: tuple[str, ...] = ()
    id_token_algorithms: tuple[str, ...] = ("RS256",)
    end_session_endpoint: str | None = None
    default_policy: str | None = None
    password_reset_policy: str | None = None
    profile_edit_policy: str | None = None
    extra_authorization_params: tuple[tuple[str, str], ...] = ()
    client_auth: ClientAuthMethod = ClientAuthMethod.CLIENT_SECRET_POST
    signing_team_id: str | None = None
    signing_key_id: str | None = None
    supports_refresh_tokens: bool = False
    enabled: bool = True

    @property
    def uses_identity_token(self) -> bool:
        """Whether callbacks must carry a verifiable identity token."""
        return self.jwks_uri is not None

    @property
    def supports_policies(self) -> bool:
        return self.default_policy is not None

    def join_scopes(self, scopes: list[str] | tuple[str, ...]) -> str:
        """Join scopes with this provider's delimiter, dropping duplicates."""
        unique = list(dict.fromkeys(s for s in scopes if s))
        return self.scope_delimiter.separator.join(unique)

    def _resolve(self, template: str, policy: str | None) -> str:
        if "{policy}" in template:
            return template.format(policy=policy or self.default_policy or "")
        return template

    def authorization_endpoint_for(self, policy: str | None = None) -> str:
        return self._resolve(self.authorization_endpoint, policy)

    def token_endpoint_for(self, policy: str | None = None) -> str:
        return self._resolve(self.token_endpoint, policy)

    def jwks_uri_for(self, policy: str | None = None) -> str | None:
        if self.jwks_uri is None:
            return None
        return self._resolve(self.jwks_uri, policy)

    def end_session_endpoint_for(self, policy: str | None = None) -> str | None:
        if self.end_session_endpoint is None:
            return None
        return self._resolve(self.end_session_endpoint, policy)

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            supports_refresh_tokens=self.supports_refresh_tokens,
            supports_password_reset=self.password_reset_policy is not None,
            supports_profile_editing=self.profile_edit_policy is not None,
            supports_account_linking=True,
            supports_logout=self.end_session_endpoint is not None,
            supported_scopes=list(self.default_scopes),
        )
