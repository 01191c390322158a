"""Provider descriptors and registry."""

from multiauth.providers.descriptor import (
    ClientAuthMethod,
    IdentityChannel,
    PkceMode,
    ProviderDescriptor,
    ResponseMode,
    ScopeDelimiter,
)
from multiauth.providers.registry import ProviderRegistry, build_registry

__all__ = [
    "ClientAuthMethod",
    "IdentityChannel",
    "PkceMode",
    "ProviderDescriptor",
    "ProviderRegistry",
    "ResponseMode",
    "ScopeDelimiter",
    "build_registry",
]
