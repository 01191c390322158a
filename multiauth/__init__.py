"""multiauth - multi-provider OAuth2/OpenID Connect login orchestration."""

__version__ = "1.0.0"
