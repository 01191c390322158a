"""Attach and detach provider identities on an existing session."""

import logging

from multiauth.errors import (
    AccountLinkingDisabled,
    CannotUnlinkLastIdentity,
    IdentityAlreadyLinkedElsewhere,
    ProviderAlreadyLinked,
    SessionExpired,
)
from multiauth.schemas.auth import Identity, Session
from multiauth.services.audit import AuditLogger, NullAuditLogger
from multiauth.services.session_manager import SessionManager, replace
from multiauth.utils.log_redaction import mask_token
from multiauth.utils.timezone import Clock, get_now

logger = logging.getLogger(__name__)


class AccountLinkingService:
    """Maintains the linked-account set of a session.

    (provider_id, subject_id) pairs are unique across sessions; the store
    enforces it, this service reports it before trying.
    """

    def __init__(
        self,
        sessions: SessionManager,
        enabled: bool = True,
        audit: AuditLogger | None = None,
        clock: Clock = get_now,
    ):
        self.sessions = sessions
        self.enabled = enabled
        self.audit = audit or NullAuditLogger()
        self._clock = clock

    def _require_live(self, session: Session) -> None:
        if not session.is_valid or session.is_expired(self._clock()):
            raise SessionExpired()

    async def link(self, session_id: str, identity: Identity, replace_existing: bool = False) -> Session:
        """
        Attach ``identity`` to the session.

        Linking the same (provider, subject) again is a no-op that returns the
        unchanged session.

        Args:
            session_id: Existing, valid session
            identity: Newly authenticated identity
            replace_existing: Swap out a different account of the same provider

        Raises:
            AccountLinkingDisabled, SessionNotFound, SessionExpired,
            ProviderAlreadyLinked, IdentityAlreadyLinkedElsewhere, SessionConflict
        """
        if not self.enabled:
            raise AccountLinkingDisabled()

        owner = await self.sessions.store.find_link(identity.provider_id, identity.subject_id)
        if owner is not None and owner != session_id:
            logger.warning(
                "Refused to link %s identity already owned by session %s",
                identity.provider_id,
                mask_token(owner),
            )
            raise IdentityAlreadyLinkedElsewhere(details={"provider_id": identity.provider_id})

        changed = False

        def attach(session: Session) -> Session | None:
            nonlocal changed
            self._require_live(session)
            existing = session.identities.get(identity.provider_id)
            if existing is not None and existing.subject_id == identity.subject_id:
                changed = False
                return None
            if existing is not None and not replace_existing:
                raise ProviderAlreadyLinked(details={"provider_id": identity.provider_id})

            identities = dict(session.identities)
            identities[identity.provider_id] = identity
            linked_at = dict(session.linked_at)
            linked_at[identity.provider_id] = self._clock()
            changes: dict = {"identities": identities, "linked_at": linked_at}
            # A refresh token belongs to the account it was issued for
            if existing is not None and session.refresh_provider_id == identity.provider_id:
                changes["refresh_token"] = None
                changes["refresh_provider_id"] = None
            changed = True
            return replace(session, **changes)

        session = await self.sessions.mutate(session_id, attach)
        if changed:
            logger.info("Linked %s to session %s", identity.provider_id, mask_token(session_id))
            await self.audit.log_account_linked(session_id, identity.provider_id, identity.subject_id)
        return session

    async def unlink(self, session_id: str, provider_id: str) -> Session:
        """
        Detach the session's identity for ``provider_id``.

        Unlinking a provider the session does not hold returns it unchanged.
        If the primary identity is removed, the oldest remaining identity
        becomes primary.

        Raises:
            SessionNotFound, SessionExpired, CannotUnlinkLastIdentity, SessionConflict
        """
        changed = False

        def detach(session: Session) -> Session | None:
            nonlocal changed
            self._require_live(session)
            if provider_id not in session.identities:
                changed = False
                return None
            if len(session.identities) == 1:
                raise CannotUnlinkLastIdentity(details={"provider_id": provider_id})

            identities = {p: i for p, i in session.identities.items() if p != provider_id}
            linked_at = {p: t for p, t in session.linked_at.items() if p != provider_id}
            changes: dict = {"identities": identities, "linked_at": linked_at}
            if session.primary_provider_id == provider_id:
                changes["primary_provider_id"] = next(iter(identities))
            if session.refresh_provider_id == provider_id:
                changes["refresh_token"] = None
                changes["refresh_provider_id"] = None
            changed = True
            return replace(session, **changes)

        session = await self.sessions.mutate(session_id, detach)
        if changed:
            logger.info("Unlinked %s from session %s", provider_id, mask_token(session_id))
            await self.audit.log_account_unlinked(session_id, provider_id)
        return session
