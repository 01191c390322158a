"""Per-provider JSON Web Key Set cache.

Read-mostly: validators read concurrently; a refresh (TTL expiry or unknown
``kid``) is coalesced so each JWKS URI has at most one fetch in flight.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
from authlib.jose import JsonWebKey
from authlib.jose.errors import JoseError

from multiauth.errors import NetworkError, TokenValidationError, TokenValidationReason

logger = logging.getLogger(__name__)


class JwksEntry:
    """Imported keys for one JWKS URI."""

    def __init__(self, keys: dict[str | None, Any], fetched_at: float, ttl_seconds: int):
        self.keys = keys
        self.fetched_at = fetched_at
        self.ttl_seconds = ttl_seconds
        # Set after a failed refresh; no refetch before this time
        self.retry_after = 0.0

    def age(self, now: float) -> float:
        return now - self.fetched_at

    def is_stale(self, now: float) -> bool:
        return self.age(now) > self.ttl_seconds

    def can_refetch(self, now: float) -> bool:
        return now >= self.retry_after

    def find(self, kid: str | None) -> Any | None:
        if kid is not None:
            return self.keys.get(kid)
        # No kid in the header: only unambiguous with a single-key set
        if len(self.keys) == 1:
            return next(iter(self.keys.values()))
        return None


class JwksCache:
    """Owned cache of provider signing keys with coalesced refresh."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        ttl_seconds: int = 3600,
        min_refresh_interval_seconds: int = 30,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.http_client = http_client
        self.ttl_seconds = ttl_seconds
        self.min_refresh_interval_seconds = min_refresh_interval_seconds
        self.timeout = timeout
        self._clock = clock
        self._entries: dict[str, JwksEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.fetch_count = 0

    def _lock_for(self, jwks_uri: str) -> asyncio.Lock:
        lock = self._locks.get(jwks_uri)
        if lock is None:
            lock = self._locks.setdefault(jwks_uri, asyncio.Lock())
        return lock

    async def get_key(self, jwks_uri: str, kid: str | None) -> Any:
        """Resolve the verification key for ``kid``.

        Fetches on first use or TTL expiry, and refetches once on an unknown
        ``kid`` (key rotation) unless the set was fetched very recently.

        Raises:
            TokenValidationError(UNKNOWN_KEY): No matching key after refresh
            NetworkError: JWKS could not be fetched and nothing is cached
        """
        now = self._clock()
        entry = self._entries.get(jwks_uri)
        if entry is None or (entry.is_stale(now) and entry.can_refetch(now)):
            entry = await self.refresh(jwks_uri, observed=entry)

        key = entry.find(kid)
        now = self._clock()
        if (
            key is None
            and entry.age(now) >= self.min_refresh_interval_seconds
            and entry.can_refetch(now)
        ):
            logger.info("Unknown kid %s for %s, refreshing JWKS", kid, jwks_uri)
            entry = await self.refresh(jwks_uri, observed=entry)
            key = entry.find(kid)

        if key is None:
            raise TokenValidationError(
                TokenValidationReason.UNKNOWN_KEY, f"No signing key matches kid '{kid}'"
            )
        return key

    async def refresh(self, jwks_uri: str, observed: JwksEntry | None = None) -> JwksEntry:
        """Fetch the key set, coalescing concurrent callers.

        Args:
            jwks_uri: Key set URL
            observed: The entry the caller saw before deciding to refresh. If
                another task replaced it meanwhile, that result is reused.
        """
        async with self._lock_for(jwks_uri):
            current = self._entries.get(jwks_uri)
            if current is not None and current is not observed:
                return current

            try:
                entry = await self._fetch(jwks_uri)
            except NetworkError:
                if current is not None:
                    current.retry_after = self._clock() + self.min_refresh_interval_seconds
                    logger.warning("JWKS refresh failed for %s, serving cached keys", jwks_uri)
                    return current
                raise

            self._entries[jwks_uri] = entry
            return entry

    async def _fetch(self, jwks_uri: str) -> JwksEntry:
        self.fetch_count += 1
        try:
            response = await self.http_client.get(jwks_uri, timeout=self.timeout)
            response.raise_for_status()
            jwks = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"JWKS endpoint returned error: {e.response.status_code}")
            raise NetworkError("Could not fetch provider signing keys") from e
        except httpx.TransportError as e:
            logger.error(f"Cannot connect to JWKS endpoint {jwks_uri}: {type(e).__name__}")
            raise NetworkError("Could not fetch provider signing keys") from e
        except ValueError as e:
            logger.error(f"JWKS endpoint {jwks_uri} returned invalid JSON")
            raise NetworkError("Provider signing keys are malformed") from e

        keys: dict[str | None, Any] = {}
        for jwk in jwks.get("keys", []) if isinstance(jwks, dict) else []:
            # Only signature keys are usable for identity tokens
            if jwk.get("use", "sig") != "sig":
                continue
            try:
                keys[jwk.get("kid")] = JsonWebKey.import_key(jwk)
            except (JoseError, ValueError) as e:
                logger.warning("Skipping unusable JWK %s: %s", jwk.get("kid"), e)

        logger.info(f"Fetched {len(keys)} signing keys from {jwks_uri}")
        return JwksEntry(keys, self._clock(), self.ttl_seconds)

    async def refresh_stale(self) -> int:
        """Refresh every entry past its TTL. Called by the background sweep."""
        now = self._clock()
        refreshed = 0
        for uri, entry in list(self._entries.items()):
            if entry.is_stale(now) and entry.can_refetch(now):
                try:
                    await self.refresh(uri, observed=entry)
                    refreshed += 1
                except NetworkError:
                    # Next validation will retry the fetch
                    logger.warning("Background JWKS refresh failed for %s", uri)
        return refreshed

    def clear(self) -> None:
        self._entries.clear()
        self._locks.clear()
