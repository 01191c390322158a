"""Map provider-specific profile payloads to one ``Identity`` shape."""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from multiauth.errors import IdentityExtractionError, NetworkError
from multiauth.providers.descriptor import IdentityChannel, ProviderDescriptor
from multiauth.providers.registry import APPLE, AZURE_B2C, FACEBOOK, GOOGLE
from multiauth.schemas.auth import Identity, TokenSet
from multiauth.utils.log_redaction import sanitize_for_log

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldMap:
    """Dotted claim paths per ``Identity`` field; the first present value wins."""

    subject: tuple[str, ...] = ("sub",)
    email: tuple[str, ...] = ("email",)
    email_verified: tuple[str, ...] = ("email_verified",)
    display_name: tuple[str, ...] = ("name",)
    given_name: tuple[str, ...] = ("given_name",)
    family_name: tuple[str, ...] = ("family_name",)
    picture_url: tuple[str, ...] = ("picture",)
    # Provider only ever releases confirmed addresses
    email_always_verified: bool = False


# Standard OIDC claim names
OIDC_FIELDS = FieldMap()

FIELD_MAPS: dict[str, FieldMap] = {
    GOOGLE: OIDC_FIELDS,
    FACEBOOK: FieldMap(
        subject=("id",),
        email_verified=(),
        given_name=("first_name",),
        family_name=("last_name",),
        picture_url=("picture.data.url",),
        email_always_verified=True,
    ),
    # Apple sends name only once, as a form field on the first login
    APPLE: FieldMap(display_name=(), given_name=(), family_name=(), picture_url=()),
    AZURE_B2C: FieldMap(
        # oid is the stable object id; sub may be absent depending on policy setup
        subject=("oid", "sub"),
        email=("emails", "email"),
        picture_url=(),
    ),
}


def get_path(payload: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path such as ``picture.data.url``."""
    value: Any = payload
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _first(payload: dict[str, Any], paths: tuple[str, ...]) -> Any:
    for path in paths:
        value = get_path(payload, path)
        # B2C returns emails as a list
        if isinstance(value, list):
            value = value[0] if value else None
        if value not in (None, ""):
            return value
    return None


def _as_bool(value: Any) -> bool:
    # Apple sends "true"/"false" strings
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


class UserInfoNormalizer:
    """Produces ``Identity`` objects from identity-token claims or userinfo responses."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        timeout: float = 10.0,
        field_maps: dict[str, FieldMap] | None = None,
    ):
        self.http_client = http_client
        self.timeout = timeout
        self.field_maps = dict(FIELD_MAPS)
        if field_maps:
            self.field_maps.update(field_maps)

    def from_payload(self, descriptor: ProviderDescriptor, payload: dict[str, Any]) -> Identity:
        """Map a raw claims/profile dict to an ``Identity``.

        Raises:
            IdentityExtractionError: If no subject id can be found
        """
        fields = self.field_maps.get(descriptor.provider_id, OIDC_FIELDS)

        subject = _as_str(_first(payload, fields.subject))
        if not subject:
            logger.warning("Profile from %s has no subject id", descriptor.provider_id)
            raise IdentityExtractionError(
                f"Profile from {descriptor.provider_id} has no subject id",
                {"provider_id": descriptor.provider_id},
            )

        email = _as_str(_first(payload, fields.email))
        if email and fields.email_always_verified:
            email_verified = True
        else:
            email_verified = _as_bool(_first(payload, fields.email_verified)) if email else False

        return Identity(
            subject_id=subject,
            provider_id=descriptor.provider_id,
            email=email,
            email_verified=email_verified,
            display_name=_as_str(_first(payload, fields.display_name)),
            given_name=_as_str(_first(payload, fields.given_name)),
            family_name=_as_str(_first(payload, fields.family_name)),
            picture_url=_as_str(_first(payload, fields.picture_url)),
            raw_claims=dict(payload),
        )

    async def fetch_userinfo(self, descriptor: ProviderDescriptor, access_token: str) -> dict[str, Any]:
        """GET the provider's profile endpoint with the access token as a bearer header.

        Raises:
            NetworkError: Transport failure or 5xx
            IdentityExtractionError: Rejected request or unreadable body
        """
        if not descriptor.userinfo_endpoint:
            raise IdentityExtractionError(
                f"Provider '{descriptor.provider_id}' has no userinfo endpoint"
            )

        try:
            response = await self.http_client.get(
                descriptor.userinfo_endpoint,
                params=dict(descriptor.userinfo_params) or None,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            logger.error(
                f"Cannot connect to userinfo endpoint for {descriptor.provider_id}: {type(e).__name__}"
            )
            raise NetworkError(
                f"Could not reach {descriptor.provider_id} userinfo endpoint",
                {"provider_id": descriptor.provider_id},
            ) from e

        if response.status_code >= 500:
            logger.error(f"Userinfo endpoint returned error: {response.status_code}")
            raise NetworkError(
                f"Identity provider returned {response.status_code}",
                {"provider_id": descriptor.provider_id, "status_code": response.status_code},
            )
        if not response.is_success:
            logger.error(
                "Userinfo request rejected by %s: %s %s",
                descriptor.provider_id,
                response.status_code,
                sanitize_for_log(response.text[:200]),
            )
            raise IdentityExtractionError(
                f"Userinfo request rejected by {descriptor.provider_id}",
                {"provider_id": descriptor.provider_id, "status_code": response.status_code},
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise IdentityExtractionError(
                f"Userinfo response from {descriptor.provider_id} is not JSON"
            ) from e
        if not isinstance(payload, dict):
            raise IdentityExtractionError(
                f"Userinfo response from {descriptor.provider_id} is not an object"
            )
        return payload

    async def normalize(
        self,
        descriptor: ProviderDescriptor,
        tokens: TokenSet,
        claims: dict[str, Any] | None = None,
    ) -> Identity:
        """Build the identity for a completed login.

        Args:
            descriptor: Provider that authenticated the user
            tokens: Token set from the code exchange
            claims: Already-verified identity-token claims, if the provider issued one

        Returns:
            Normalized Identity
        """
        if descriptor.identity_channel is IdentityChannel.ID_TOKEN:
            if not claims:
                raise IdentityExtractionError(
                    f"Provider '{descriptor.provider_id}' returned no verified identity token"
                )
            identity = self.from_payload(descriptor, claims)
        else:
            payload = await self.fetch_userinfo(descriptor, tokens.access_token.get_secret_value())
            identity = self.from_payload(descriptor, payload)
            # userinfo must describe the same user the identity token was issued for
            if claims and claims.get("sub") and claims["sub"] != identity.subject_id:
                logger.warning(
                    "Userinfo subject does not match identity token for %s",
                    descriptor.provider_id,
                )
                raise IdentityExtractionError(
                    "Userinfo subject does not match the identity token",
                    {"provider_id": descriptor.provider_id},
                )

        logger.debug(
            "Normalized identity %s/%s", descriptor.provider_id, sanitize_for_log(identity.subject_id)
        )
        return identity
