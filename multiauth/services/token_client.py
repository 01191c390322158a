"""Authorization-code and refresh-token exchange against provider token endpoints."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from authlib.jose import JsonWebToken

from multiauth.errors import ConfigurationError, InvalidGrant, NetworkError
from multiauth.providers.descriptor import ClientAuthMethod, ProviderDescriptor
from multiauth.schemas.auth import AuthorizationRequest, TokenSet
from multiauth.services.secrets import SecretProvider
from multiauth.utils.log_redaction import sanitize_for_log

logger = logging.getLogger(__name__)

APPLE_AUDIENCE = "https://appleid.apple.com"
CLIENT_ASSERTION_TTL_SECONDS = 300

_es256 = JsonWebToken(["ES256"])


def build_signed_client_secret(
    descriptor: ProviderDescriptor, private_key_pem: str, now: int | None = None
) -> str:
    """Create the short-lived ES256 JWT Apple expects as ``client_secret``.

    Args:
        descriptor: Provider with ``signing_team_id`` and ``signing_key_id``
        private_key_pem: The team's .p8 private key
        now: Issue time (epoch seconds), for tests

    Returns:
        Compact JWT string
    """
    if not descriptor.signing_team_id or not descriptor.signing_key_id:
        raise ConfigurationError(
            f"Provider '{descriptor.provider_id}' needs a team id and key id to sign its client secret"
        )
    issued_at = int(now if now is not None else time.time())
    header = {"alg": "ES256", "kid": descriptor.signing_key_id}
    payload = {
        "iss": descriptor.signing_team_id,
        "iat": issued_at,
        "exp": issued_at + CLIENT_ASSERTION_TTL_SECONDS,
        "aud": APPLE_AUDIENCE,
        "sub": descriptor.client_id,
    }
    token = _es256.encode(header, payload, private_key_pem)
    return token.decode("utf-8") if isinstance(token, bytes) else token


def _parse_error_body(response: httpx.Response) -> tuple[str | None, str | None]:
    """Extract (error, error_description) from a provider error response."""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return None, sanitize_for_log(text[:300]) if text else None

    if not isinstance(body, dict):
        return None, None

    error = body.get("error")
    # Facebook nests errors: {"error": {"message": ..., "type": ...}}
    if isinstance(error, dict):
        return error.get("type") or error.get("code"), error.get("message")
    return error, body.get("error_description")


class TokenExchangeClient:
    """Performs code->token and refresh exchanges with bounded retries.

    Only transport failures (timeouts, connection errors) are retried, with
    capped exponential backoff. HTTP error responses are never retried.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        secret_provider: SecretProvider,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_base: float = 0.5,
        backoff_max: float = 4.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.http_client = http_client
        self.secret_provider = secret_provider
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep

    def _client_secret(self, descriptor: ProviderDescriptor) -> str:
        secret = self.secret_provider.get_required_secret(descriptor.client_secret_key)
        if descriptor.client_auth is ClientAuthMethod.SIGNED_JWT:
            return build_signed_client_secret(descriptor, secret)
        return secret

    async def exchange_code(
        self,
        descriptor: ProviderDescriptor,
        code: str,
        request: AuthorizationRequest,
    ) -> TokenSet:
        """Exchange an authorization code for tokens.

        Args:
            descriptor: Provider the code came from
            code: Authorization code from the callback
            request: The consumed request (redirect URI, PKCE verifier, policy)

        Returns:
            TokenSet

        Raises:
            InvalidGrant: Provider returned a non-2xx response
            NetworkError: Timeout or connection failure after retries
        """
        if not code:
            raise InvalidGrant("Authorization code is required")

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": request.redirect_uri,
            "client_id": descriptor.client_id,
            "client_secret": self._client_secret(descriptor),
        }
        if request.code_verifier:
            data["code_verifier"] = request.code_verifier

        endpoint = descriptor.token_endpoint_for(request.extra_params.get("p"))
        tokens = await self._request_tokens(descriptor, endpoint, data)
        logger.info("Exchanged authorization code for tokens (%s)", descriptor.provider_id)
        return tokens

    async def refresh(
        self,
        descriptor: ProviderDescriptor,
        refresh_token: str,
        policy: str | None = None,
    ) -> TokenSet:
        """Redeem a refresh token for a new token set.

        Raises:
            InvalidGrant: Refresh token rejected
            NetworkError: Timeout or connection failure after retries
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": descriptor.client_id,
            "client_secret": self._client_secret(descriptor),
        }
        tokens = await self._request_tokens(descriptor, descriptor.token_endpoint_for(policy), data)
        logger.info("Refreshed tokens (%s)", descriptor.provider_id)
        return tokens

    async def _request_tokens(
        self, descriptor: ProviderDescriptor, endpoint: str, data: dict[str, str]
    ) -> TokenSet:
        response = await self._post_with_retry(descriptor, endpoint, data)

        if response.status_code >= 500:
            logger.error(
                "Token endpoint for %s returned %s", descriptor.provider_id, response.status_code
            )
            raise NetworkError(
                f"Identity provider returned {response.status_code}",
                {"provider_id": descriptor.provider_id, "status_code": response.status_code},
            )

        if not response.is_success:
            error, description = _parse_error_body(response)
            logger.error(
                "Token request rejected by %s: %s %s",
                descriptor.provider_id,
                response.status_code,
                sanitize_for_log(error or "unknown_error"),
            )
            raise InvalidGrant(
                f"Token request rejected by {descriptor.provider_id}",
                status_code=response.status_code,
                error=error,
                error_description=description,
            )

        return self._parse_token_response(descriptor, response)

    async def _post_with_retry(
        self, descriptor: ProviderDescriptor, endpoint: str, data: dict[str, str]
    ) -> httpx.Response:
        attempt = 0
        while True:
            try:
                return await self.http_client.post(
                    endpoint,
                    data=data,
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                )
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Token request to %s failed after %d attempts: %s",
                        descriptor.provider_id,
                        attempt + 1,
                        type(e).__name__,
                    )
                    raise NetworkError(
                        f"Could not reach {descriptor.provider_id} token endpoint",
                        {"provider_id": descriptor.provider_id, "attempts": attempt + 1},
                    ) from e

                delay = min(self.backoff_base * (2**attempt), self.backoff_max)
                attempt += 1
                logger.warning(
                    "Token request to %s failed (%s), retry %d/%d in %.1fs",
                    descriptor.provider_id,
                    type(e).__name__,
                    attempt,
                    self.max_retries,
                    delay,
                )
                await self._sleep(delay)

    def _parse_token_response(
        self, descriptor: ProviderDescriptor, response: httpx.Response
    ) -> TokenSet:
        try:
            data = response.json()
            expires_in = data.get("expires_in")
            return TokenSet(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token"),
                id_token=data.get("id_token"),
                token_type=data.get("token_type") or "Bearer",
                expires_in=int(expires_in) if expires_in is not None else None,
                scope=data.get("scope"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error("Malformed token response from %s", descriptor.provider_id)
            raise InvalidGrant(
                f"Token response from {descriptor.provider_id} is missing 'access_token'",
                status_code=response.status_code,
            ) from e
