"""Session lifecycle: create, validate, refresh, logout.

States: Authenticated -> Refreshed* -> Expired. Logging out deletes the
session, so a logged-out id is simply unknown. Every mutation
is a read-modify-write against the store's version; a writer that loses the
race re-reads once and reapplies its change, then gives up with
``SessionConflict``.
"""

import logging
import secrets
from collections.abc import Callable
from datetime import timedelta

from multiauth.errors import (
    IdentityAlreadyLinkedElsewhere,
    InvalidGrant,
    SessionConflict,
    SessionExpired,
    SessionNotFound,
)
from multiauth.providers.registry import ProviderRegistry
from multiauth.schemas.auth import Identity, Session, SessionStatus, TokenSet
from multiauth.services.audit import AuditLogger, NullAuditLogger
from multiauth.services.session_store import SessionStore
from multiauth.services.token_client import TokenExchangeClient
from multiauth.utils.log_redaction import mask_token
from multiauth.utils.timezone import Clock, get_now

logger = logging.getLogger(__name__)

# Returning None from a change means "nothing to write"
SessionChange = Callable[[Session], Session | None]


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


def replace(session: Session, **changes) -> Session:
    """Copy ``session`` with ``changes`` applied, re-running validation."""
    return Session.model_validate({**session.model_dump(), **changes})


class SessionManager:
    """Owns session state transitions."""

    def __init__(
        self,
        store: SessionStore,
        token_client: TokenExchangeClient,
        registry: ProviderRegistry,
        ttl_minutes: int = 24 * 60,
        audit: AuditLogger | None = None,
        clock: Clock = get_now,
    ):
        self.store = store
        self.token_client = token_client
        self.registry = registry
        self.ttl = timedelta(minutes=ttl_minutes)
        self.audit = audit or NullAuditLogger()
        self._clock = clock

    async def get(self, session_id: str) -> Session:
        """
        Load a session without checking validity.

        Raises:
            SessionNotFound: Unknown or logged-out session
        """
        session = await self.store.get(session_id) if session_id else None
        if session is None:
            raise SessionNotFound(details={"session_id": mask_token(session_id)})
        return session

    async def mutate(self, session_id: str, change: SessionChange) -> Session:
        """
        Apply ``change`` with compare-and-swap, retrying once on conflict.

        Args:
            session_id: Session to update
            change: Pure function of the freshly read session; may raise to abort

        Raises:
            SessionConflict: Lost the race twice
        """
        for attempt in range(2):
            session = await self.get(session_id)
            updated = change(session)
            if updated is None:
                return session
            try:
                return await self.store.put(updated, expected_version=session.version)
            except SessionConflict:
                if attempt:
                    logger.warning("Session %s conflict after retry", mask_token(session_id))
                    raise
                logger.info("Session %s changed concurrently, retrying", mask_token(session_id))

        raise SessionConflict()

    async def create(
        self,
        identity: Identity,
        tokens: TokenSet | None = None,
    ) -> tuple[Session, bool]:
        """
        Start a session for a freshly authenticated identity.

        An identity already linked to a live session signs back into that
        session; one linked to a dead session replaces it.

        Returns:
            Tuple of (session, resumed)
        """
        refresh_token = tokens.refresh_token if tokens else None

        for attempt in range(2):
            owner = await self.store.find_link(identity.provider_id, identity.subject_id)
            if owner is not None:
                resumed = await self._resume(owner, identity, tokens)
                if resumed is not None:
                    return resumed, True

            now = self._clock()
            session = Session(
                session_id=generate_session_id(),
                primary_provider_id=identity.provider_id,
                identities={identity.provider_id: identity},
                linked_at={identity.provider_id: now},
                created_at=now,
                expires_at=now + self.ttl,
                last_accessed_at=now,
                refresh_token=refresh_token,
                refresh_provider_id=identity.provider_id if refresh_token else None,
            )
            try:
                created = await self.store.put(session, expected_version=None)
            except IdentityAlreadyLinkedElsewhere:
                # Concurrent first login for the same identity; join the winner
                if attempt:
                    raise
                continue

            logger.info(
                "Created session %s for %s", mask_token(created.session_id), identity.provider_id
            )
            return created, False

        raise SessionConflict()

    async def _resume(
        self, session_id: str, identity: Identity, tokens: TokenSet | None
    ) -> Session | None:
        now = self._clock()

        def sign_in(session: Session) -> Session:
            if not session.is_valid or session.is_expired(now):
                raise SessionExpired()
            identities = dict(session.identities)
            identities[identity.provider_id] = identity
            changes = {
                "identities": identities,
                "expires_at": max(session.expires_at, now + self.ttl),
                "last_accessed_at": now,
                "status": SessionStatus.AUTHENTICATED,
            }
            if tokens is not None and tokens.refresh_token is not None:
                changes["refresh_token"] = tokens.refresh_token
                changes["refresh_provider_id"] = identity.provider_id
            return replace(session, **changes)

        try:
            session = await self.mutate(session_id, sign_in)
        except SessionNotFound:
            return None
        except SessionExpired:
            await self.store.delete(session_id)
            logger.info("Replaced dead session %s", mask_token(session_id))
            return None

        logger.info("Resumed session %s via %s", mask_token(session_id), identity.provider_id)
        return session

    async def _expire(self, session_id: str, reason: str) -> None:
        def mark(session: Session) -> Session | None:
            if session.status is SessionStatus.EXPIRED:
                return None
            return replace(session, status=SessionStatus.EXPIRED, refresh_token=None)

        try:
            await self.mutate(session_id, mark)
        except SessionNotFound:
            return
        logger.info("Session %s expired (%s)", mask_token(session_id), reason)
        await self.audit.log_session_expired(session_id, reason)

    async def validate(self, session_id: str) -> Session:
        """
        Return the session if it is still valid, touching ``last_accessed_at``.

        Raises:
            SessionNotFound: Unknown session
            SessionExpired: Past ``expires_at`` or flagged expired
        """
        session = await self.get(session_id)
        now = self._clock()

        if session.status is SessionStatus.EXPIRED:
            raise SessionExpired()
        if session.is_expired(now):
            await self._expire(session_id, "ttl")
            raise SessionExpired()

        def touch(current: Session) -> Session | None:
            if not current.is_valid or current.is_expired(now):
                raise SessionExpired()
            return replace(current, last_accessed_at=now)

        try:
            return await self.mutate(session_id, touch)
        except SessionConflict:
            # Another writer touched it first; the session is still valid
            logger.debug("Skipped touch of busy session %s", mask_token(session_id))
            return await self.get(session_id)

    async def refresh(self, session_id: str) -> Session:
        """
        Redeem the stored refresh token and extend ``expires_at``.

        A rejected refresh token moves the session to Expired. Network
        failures leave it untouched.

        Raises:
            SessionNotFound, SessionExpired, NetworkError, SessionConflict
            InvalidGrant: Session holds no refresh token
        """
        session = await self.get(session_id)
        now = self._clock()
        if not session.is_valid:
            raise SessionExpired()
        if session.is_expired(now):
            await self._expire(session_id, "ttl")
            raise SessionExpired()
        if session.refresh_token is None or session.refresh_provider_id is None:
            raise InvalidGrant("Session has no refresh token")

        descriptor = self.registry.get(session.refresh_provider_id)
        try:
            tokens = await self.token_client.refresh(
                descriptor, session.refresh_token.get_secret_value()
            )
        except InvalidGrant as e:
            logger.warning(
                "Refresh token for session %s rejected by %s",
                mask_token(session_id),
                descriptor.provider_id,
            )
            await self._expire(session_id, "refresh_rejected")
            raise SessionExpired("Session refresh was rejected, please sign in again") from e

        refreshed_at = self._clock()

        def extend(current: Session) -> Session:
            if not current.is_valid:
                raise SessionExpired()
            changes = {
                "expires_at": refreshed_at + self.ttl,
                "last_accessed_at": refreshed_at,
                "status": SessionStatus.REFRESHED,
            }
            # Keep the old token unless the provider rotated it
            if tokens.refresh_token is not None:
                changes["refresh_token"] = tokens.refresh_token
            return replace(current, **changes)

        updated = await self.mutate(session_id, extend)
        logger.info("Refreshed session %s", mask_token(session_id))
        await self.audit.log_session_refreshed(session_id, descriptor.provider_id)
        return updated

    async def logout(self, session_id: str) -> None:
        """End the session. Idempotent: unknown ids succeed silently."""
        if not session_id:
            return
        deleted = await self.store.delete(session_id)
        if deleted:
            logger.info("Logged out session %s", mask_token(session_id))
            await self.audit.log_logout(session_id)

    async def purge_expired(self) -> int:
        """Delete expired sessions. Called by the background sweep."""
        deleted = await self.store.purge_expired()
        if deleted > 0:
            logger.info(f"Cleaned up {deleted} expired sessions")
        return deleted
