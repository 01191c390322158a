"""Provider catalog schemas."""

from pydantic import BaseModel, Field


class ProviderCapabilities(BaseModel):
    """What a provider integration supports."""

    supports_refresh_tokens: bool = False
    supports_password_reset: bool = False
    supports_profile_editing: bool = False
    supports_account_linking: bool = True
    supports_logout: bool = False
    supported_scopes: list[str] = Field(default_factory=list)


class ProviderInfo(BaseModel):
    """Public description of a configured provider."""

    provider_id: str
    display_name: str
    enabled: bool
    default_scopes: list[str]
    capabilities: ProviderCapabilities


class ProviderValidationResult(BaseModel):
    """Result of checking one provider's configuration."""

    provider_id: str
    valid: bool
    errors: list[str] = Field(default_factory=list)
