"""Identity token (JWT) verification.

Every token goes through the full pipeline: pinned algorithm, JWKS key by
``kid``, signature, then authlib claims validation (issuer, audience, time
claims with skew, nonce). There is no decode-without-verify path.
"""

import logging
from typing import Any

from authlib.jose import JsonWebToken, JWTClaims
from authlib.jose.errors import (
    BadSignatureError,
    DecodeError,
    ExpiredTokenError,
    InvalidClaimError,
    InvalidTokenError,
    JoseError,
    MissingClaimError,
)
from authlib.jose.util import extract_header

from multiauth.errors import TokenValidationError, TokenValidationReason
from multiauth.providers.descriptor import ProviderDescriptor
from multiauth.services.jwks_cache import JwksCache
from multiauth.utils.timezone import Clock, get_now

logger = logging.getLogger(__name__)

Reason = TokenValidationReason

CLAIM_REASONS = {
    "iss": Reason.ISSUER_MISMATCH,
    "aud": Reason.AUDIENCE_MISMATCH,
    "nonce": Reason.NONCE_MISMATCH,
}


def parse_header(token: str) -> dict[str, Any]:
    """Read the (unverified) JOSE header of a compact JWT.

    Raises:
        TokenValidationError(MALFORMED)
    """
    parts = token.split(".") if token else []
    if len(parts) != 3 or not all(parts[:2]):
        raise TokenValidationError(Reason.MALFORMED, "Identity token is not a compact JWS")
    try:
        return extract_header(parts[0].encode("ascii"), DecodeError)
    except (DecodeError, UnicodeError) as e:
        raise TokenValidationError(Reason.MALFORMED, "Identity token header is unreadable") from e


class IdentityTokenValidator:
    """Verifies identity tokens against cached provider keys."""

    def __init__(
        self,
        jwks_cache: JwksCache,
        clock_skew_seconds: int = 300,
        clock: Clock = get_now,
    ):
        self.jwks_cache = jwks_cache
        self.clock_skew_seconds = clock_skew_seconds
        self._clock = clock

    async def validate(
        self,
        id_token: str,
        descriptor: ProviderDescriptor,
        nonce: str,
        policy: str | None = None,
        audience: str | None = None,
    ) -> dict[str, Any]:
        """Verify ``id_token`` and return its claims.

        Args:
            id_token: Raw compact JWT
            descriptor: Provider that issued it
            nonce: Nonce recorded in the matched AuthorizationRequest
            policy: Policy the login used (selects the JWKS on multi-policy providers)
            audience: Expected audience, defaults to the provider client id

        Returns:
            Verified claims

        Raises:
            TokenValidationError: With the specific rejection reason
        """
        try:
            claims = await self._validate(id_token, descriptor, nonce, policy, audience)
        except TokenValidationError as e:
            logger.warning(
                "Identity token rejected for %s: %s", descriptor.provider_id, e.reason.value
            )
            raise

        logger.info(
            "Verified identity token for %s (sub: %s)", descriptor.provider_id, claims.get("sub")
        )
        return claims

    async def _validate(
        self,
        id_token: str,
        descriptor: ProviderDescriptor,
        nonce: str,
        policy: str | None,
        audience: str | None,
    ) -> dict[str, Any]:
        # (1) header: kid and a pinned algorithm ("none"/HS* downgrades fail here)
        header = parse_header(id_token)
        alg = header.get("alg")
        if alg not in descriptor.id_token_algorithms:
            raise TokenValidationError(
                Reason.UNSUPPORTED_ALGORITHM, f"Algorithm '{alg}' is not accepted"
            )
        kid = header.get("kid")
        if kid is not None and not isinstance(kid, str):
            raise TokenValidationError(Reason.MALFORMED, "Identity token 'kid' must be a string")

        jwks_uri = descriptor.jwks_uri_for(policy)
        if jwks_uri is None:
            raise TokenValidationError(
                Reason.UNKNOWN_KEY, f"Provider '{descriptor.provider_id}' publishes no JWKS"
            )

        if not descriptor.issuers:
            raise TokenValidationError(
                Reason.ISSUER_MISMATCH, f"Provider '{descriptor.provider_id}' has no expected issuer"
            )

        # (2) key resolution through the cache
        key = await self.jwks_cache.get_key(jwks_uri, kid)

        # (3) signature
        expected_aud = audience or descriptor.client_id
        jwt = JsonWebToken(list(descriptor.id_token_algorithms))
        try:
            claims = jwt.decode(
                id_token,
                key,
                claims_options={
                    "iss": {"essential": True, "values": list(descriptor.issuers)},
                    "aud": {"essential": True, "value": expected_aud},
                    "sub": {"essential": True},
                    "exp": {"essential": True},
                    "iat": {"essential": True},
                    "nonce": {"essential": True, "value": nonce},
                },
            )
        except BadSignatureError as e:
            raise TokenValidationError(Reason.BAD_SIGNATURE, "Signature verification failed") from e
        except JoseError as e:
            raise TokenValidationError(Reason.MALFORMED, f"Identity token rejected: {e.error}") from e
        except ValueError as e:
            raise TokenValidationError(Reason.MALFORMED, "Identity token payload is unreadable") from e

        # (4) issuer, audience, time claims with skew tolerance, nonce
        self._validate_claims(claims)

        aud = claims["aud"]
        if isinstance(aud, list) and len(aud) > 1 and claims.get("azp", expected_aud) != expected_aud:
            raise TokenValidationError(Reason.AUDIENCE_MISMATCH, "Token authorized party mismatch")

        return dict(claims)

    def _validate_claims(self, claims: JWTClaims) -> None:
        now = int(self._clock().timestamp())
        leeway = self.clock_skew_seconds
        try:
            claims.validate(now=now, leeway=leeway)
        except ExpiredTokenError as e:
            raise TokenValidationError(Reason.EXPIRED, "Identity token has expired") from e
        except MissingClaimError as e:
            if "nonce" not in claims:
                raise TokenValidationError(
                    Reason.NONCE_MISMATCH, "Nonce does not match login request"
                ) from e
            raise TokenValidationError(Reason.MISSING_CLAIM, e.description) from e
        except InvalidClaimError as e:
            # Non-numeric exp/iat/nbf land here too
            claim_name = getattr(e, "claim_name", None)
            reason = CLAIM_REASONS.get(claim_name, Reason.MALFORMED)
            raise TokenValidationError(reason, f"Invalid '{claim_name}' claim") from e
        except InvalidTokenError as e:
            try:
                claims.validate_nbf(now, leeway)
            except InvalidTokenError:
                raise TokenValidationError(
                    Reason.NOT_YET_VALID, "Identity token is not valid yet"
                ) from e
            raise TokenValidationError(
                Reason.ISSUED_IN_FUTURE, "Identity token issued in the future"
            ) from e

        # Older authlib releases only check that iat is numeric
        if claims["iat"] > now + leeway:
            raise TokenValidationError(Reason.ISSUED_IN_FUTURE, "Identity token issued in the future")
