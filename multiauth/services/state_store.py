"""Anti-forgery state store: issues and single-use-consumes login requests.

``consume`` is an atomic compare-and-delete: for any state exactly one caller
gets the request back, every other attempt (replay, double submit, expired)
fails with ``StateMismatchError``.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from multiauth.errors import StateMismatchError
from multiauth.models.authorization_request import AuthorizationRequestRecord
from multiauth.schemas.auth import AuthorizationRequest
from multiauth.services.pkce import derive_code_challenge, generate_nonce, generate_state
from multiauth.utils.log_redaction import mask_token
from multiauth.utils.timezone import Clock, ensure_aware, get_now

logger = logging.getLogger(__name__)


class StateBackend(Protocol):
    """Storage for outstanding authorization requests."""

    async def add(self, request: AuthorizationRequest) -> bool:
        """Store a request. Returns False if the state is already taken."""
        ...

    async def take(self, state: str) -> AuthorizationRequest | None:
        """Atomically remove and return the request for ``state``."""
        ...

    async def purge_expired(self) -> int:
        ...


class MemoryStateBackend:
    """Process-local backend guarded by a single asyncio lock."""

    def __init__(self, clock: Clock = get_now):
        self._requests: dict[str, AuthorizationRequest] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def add(self, request: AuthorizationRequest) -> bool:
        async with self._lock:
            if request.state in self._requests:
                return False
            self._requests[request.state] = request
            return True

    async def take(self, state: str) -> AuthorizationRequest | None:
        async with self._lock:
            return self._requests.pop(state, None)

    async def purge_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [s for s, r in self._requests.items() if r.is_expired(now)]
            for state in expired:
                del self._requests[state]
        return len(expired)

    def __len__(self) -> int:
        return len(self._requests)


class DatabaseStateBackend:
    """SQLAlchemy backend over the ``authorization_requests`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], clock: Clock = get_now):
        self._session_maker = session_maker
        self._clock = clock

    async def add(self, request: AuthorizationRequest) -> bool:
        record = AuthorizationRequestRecord(
            state=request.state,
            provider_id=request.provider_id,
            nonce=request.nonce,
            code_verifier=request.code_verifier,
            code_challenge=request.code_challenge,
            redirect_uri=request.redirect_uri,
            return_url=request.return_url,
            extra_params=request.extra_params or None,
            issued_at=request.issued_at,
            expires_at=request.expires_at,
        )
        async with self._session_maker() as db:
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
        return True

    async def take(self, state: str) -> AuthorizationRequest | None:
        async with self._session_maker() as db:
            result = await db.execute(
                select(AuthorizationRequestRecord).where(AuthorizationRequestRecord.state == state)
            )
            record = result.scalar_one_or_none()
            if record is None:
                return None

            request = AuthorizationRequest(
                provider_id=record.provider_id,
                state=record.state,
                nonce=record.nonce,
                code_verifier=record.code_verifier,
                code_challenge=record.code_challenge,
                redirect_uri=record.redirect_uri,
                return_url=record.return_url,
                extra_params=record.extra_params or {},
                issued_at=ensure_aware(record.issued_at),
                expires_at=ensure_aware(record.expires_at),
            )

            # Single writer wins: only the delete that removes the row may return it
            deleted = await db.execute(
                delete(AuthorizationRequestRecord).where(AuthorizationRequestRecord.state == state)
            )
            await db.commit()
            if (deleted.rowcount or 0) != 1:  # type: ignore[union-attr]
                return None
            return request

    async def purge_expired(self) -> int:
        now = self._clock()
        async with self._session_maker() as db:
            result = await db.execute(
                delete(AuthorizationRequestRecord).where(AuthorizationRequestRecord.expires_at <= now)
            )
            await db.commit()
        return result.rowcount or 0  # type: ignore[union-attr]


class AntiForgeryStateStore:
    """Issues ``AuthorizationRequest``s and consumes them exactly once."""

    def __init__(
        self,
        backend: StateBackend,
        ttl_minutes: int = 10,
        clock: Clock = get_now,
    ):
        self.backend = backend
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    async def issue(
        self,
        provider_id: str,
        return_url: str | None,
        *,
        redirect_uri: str,
        extra_params: dict[str, str] | None = None,
        code_verifier: str | None = None,
    ) -> AuthorizationRequest:
        """Mint state and nonce, attach the PKCE verifier, and store the request.

        Args:
            provider_id: Provider the login is for
            return_url: Already-validated post-login destination
            redirect_uri: Callback URI sent to the provider
            extra_params: Provider parameters chosen at login (e.g. B2C policy)
            code_verifier: PKCE verifier, when the provider uses PKCE

        Returns:
            The stored request
        """
        now = self._clock()
        # token_urlsafe(32) collisions are practically impossible; retry anyway
        for _ in range(3):
            request = AuthorizationRequest(
                provider_id=provider_id,
                state=generate_state(),
                nonce=generate_nonce(),
                code_verifier=code_verifier,
                code_challenge=derive_code_challenge(code_verifier) if code_verifier else None,
                redirect_uri=redirect_uri,
                return_url=return_url,
                extra_params=extra_params or {},
                issued_at=now,
                expires_at=now + self.ttl,
            )
            if await self.backend.add(request):
                logger.debug(
                    "Issued authorization request for %s (state: %s)",
                    provider_id,
                    mask_token(request.state),
                )
                return request

        raise RuntimeError("Could not allocate a unique state value")

    async def consume(self, state: str) -> AuthorizationRequest:
        """Return and delete the request for ``state``.

        Raises:
            StateMismatchError: Unknown, already consumed or expired state
        """
        if not state:
            raise StateMismatchError("Missing state parameter")

        request = await self.backend.take(state)
        if request is None:
            logger.warning("Unknown or replayed state: %s", mask_token(state))
            raise StateMismatchError()

        if request.is_expired(self._clock()):
            logger.warning("Expired state: %s", mask_token(state))
            raise StateMismatchError("Login request has expired, please start again")

        logger.debug("Consumed state: %s", mask_token(state))
        return request

    async def purge_expired(self) -> int:
        """Delete expired requests. Called by the background sweep."""
        deleted = await self.backend.purge_expired()
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired authorization requests")
        return deleted
