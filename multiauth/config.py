"""Configuration settings for multiauth."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "multiauth"
    log_level: str = "INFO"
    base_url: str = "http://localhost:8000"
    callback_path_template: str = "/auth/{provider_id}/callback"

    # Database
    database_url: str = "sqlite+aiosqlite:///./multiauth.db"

    # Return URL validation (open redirect protection)
    # Relative paths are always allowed; empty list = same origin as base_url only
    allowed_return_origins: list[str] = []

    # Anti-forgery state
    state_ttl_minutes: int = 10

    # Sessions
    session_ttl_minutes: int = 24 * 60
    allow_account_linking: bool = True

    # Identity token validation
    clock_skew_seconds: int = 300
    jwks_cache_ttl_seconds: int = 3600
    jwks_min_refresh_interval_seconds: int = 30

    # Outbound HTTP
    http_timeout_seconds: float = 10.0
    token_exchange_max_retries: int = 2
    token_exchange_backoff_base: float = 0.5  # 0.5s, 1s, 2s ...
    token_exchange_backoff_max: float = 4.0

    # Audit trail
    audit_enabled: bool = True
    audit_retention_days: int = 90

    # Background maintenance
    sweep_interval_seconds: int = 300

    # Google
    google_enabled: bool = False
    google_client_id: str = ""
    google_client_secret_key: str = "google_client_secret"
    google_scopes: list[str] | None = None

    # Facebook
    facebook_enabled: bool = False
    facebook_client_id: str = ""
    facebook_client_secret_key: str = "facebook_app_secret"
    facebook_scopes: list[str] | None = None

    # Apple (client secret is an ES256 JWT signed with this private key)
    apple_enabled: bool = False
    apple_client_id: str = ""
    apple_team_id: str = ""
    apple_key_id: str = ""
    apple_client_secret_key: str = "apple_private_key"
    apple_scopes: list[str] | None = None

    # Azure AD B2C
    azure_b2c_enabled: bool = False
    azure_b2c_client_id: str = ""
    azure_b2c_client_secret_key: str = "azure_b2c_client_secret"
    azure_b2c_tenant: str = ""  # e.g. contoso.onmicrosoft.com
    azure_b2c_tenant_id: str = ""  # directory GUID, appears in issuer
    azure_b2c_custom_domain: str | None = None
    azure_b2c_signin_policy: str = "B2C_1_signupsignin"
    azure_b2c_reset_password_policy: str = "B2C_1_passwordreset"
    azure_b2c_edit_profile_policy: str = "B2C_1_profileedit"
    azure_b2c_scopes: list[str] | None = None

    def redirect_uri_for(self, provider_id: str) -> str:
        """Build the callback URI registered at the provider."""
        path = self.callback_path_template.format(provider_id=provider_id)
        return f"{self.base_url.rstrip('/')}{path}"


settings = Settings()


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return settings
