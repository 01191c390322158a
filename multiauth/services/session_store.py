"""Session persistence with optimistic concurrency.

``put(session, expected_version)`` is a compare-and-swap: it succeeds only if
the stored version still equals ``expected_version`` (``None`` means the
session must not exist yet) and returns the session with its version bumped.
Linked identities are unique on (provider_id, subject_id) across all
sessions.
"""

import asyncio
import logging
from typing import Protocol

from pydantic import SecretStr
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from multiauth.errors import IdentityAlreadyLinkedElsewhere, SessionConflict
from multiauth.models import LinkedAccountRecord, SessionRecord
from multiauth.repositories.session_repository import SessionRepository
from multiauth.schemas.auth import Identity, Session, SessionStatus
from multiauth.utils.log_redaction import mask_token
from multiauth.utils.timezone import Clock, ensure_aware, get_now

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """Collaborator that persists sessions."""

    async def get(self, session_id: str) -> Session | None:
        ...

    async def put(self, session: Session, expected_version: int | None) -> Session:
        """Compare-and-swap write.

        Raises:
            SessionConflict: Stored version differs from ``expected_version``
            IdentityAlreadyLinkedElsewhere: An identity belongs to another session
        """
        ...

    async def delete(self, session_id: str) -> bool:
        ...

    async def find_link(self, provider_id: str, subject_id: str) -> str | None:
        """Return the id of the session owning this provider identity."""
        ...

    async def purge_expired(self) -> int:
        ...


def _conflict(session_id: str, expected_version: int | None) -> SessionConflict:
    return SessionConflict(
        "Session was modified concurrently",
        {"session_id": mask_token(session_id), "expected_version": expected_version},
    )


class MemorySessionStore:
    """Process-local store guarded by one asyncio lock."""

    def __init__(self, clock: Clock = get_now):
        self._sessions: dict[str, Session] = {}
        self._links: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, session_id: str) -> Session | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def put(self, session: Session, expected_version: int | None) -> Session:
        async with self._lock:
            current = self._sessions.get(session.session_id)
            current_version = current.version if current else None
            if current_version != expected_version:
                raise _conflict(session.session_id, expected_version)

            for identity in session.identities.values():
                owner = self._links.get(identity.key)
                if owner is not None and owner != session.session_id:
                    raise IdentityAlreadyLinkedElsewhere(
                        details={"provider_id": identity.provider_id}
                    )

            if current is not None:
                for identity in current.identities.values():
                    self._links.pop(identity.key, None)
            for identity in session.identities.values():
                self._links[identity.key] = session.session_id

            stored = session.model_copy(update={"version": (expected_version or 0) + 1}, deep=True)
            self._sessions[session.session_id] = stored
            return stored.model_copy(deep=True)

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            for identity in session.identities.values():
                self._links.pop(identity.key, None)
            return True

    async def find_link(self, provider_id: str, subject_id: str) -> str | None:
        return self._links.get((provider_id, subject_id))

    async def purge_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [
                s.session_id
                for s in self._sessions.values()
                if s.is_expired(now) or s.status is SessionStatus.EXPIRED
            ]
        for session_id in expired:
            await self.delete(session_id)
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


def _to_session(record: SessionRecord, links: list[LinkedAccountRecord]) -> Session:
    return Session(
        session_id=record.session_id,
        primary_provider_id=record.primary_provider_id,
        identities={
            provider_id: Identity.model_validate(data)
            for provider_id, data in (record.identities or {}).items()
        },
        created_at=ensure_aware(record.created_at),
        expires_at=ensure_aware(record.expires_at),
        last_accessed_at=ensure_aware(record.last_accessed_at),
        refresh_token=SecretStr(record.refresh_token) if record.refresh_token else None,
        refresh_provider_id=record.refresh_provider_id,
        linked_at={link.provider_id: ensure_aware(link.linked_at) for link in links},
        status=SessionStatus(record.status),
        version=record.version,
    )


def _record_values(session: Session, version: int) -> dict:
    return {
        "primary_provider_id": session.primary_provider_id,
        "primary_subject_id": session.primary_identity.subject_id,
        "identities": {
            provider_id: identity.model_dump(mode="json")
            for provider_id, identity in session.identities.items()
        },
        "refresh_token": (
            session.refresh_token.get_secret_value() if session.refresh_token else None
        ),
        "refresh_provider_id": session.refresh_provider_id,
        "status": session.status.value,
        "created_at": session.created_at,
        "expires_at": session.expires_at,
        "last_accessed_at": session.last_accessed_at,
        "version": version,
    }


class DatabaseSessionStore:
    """SQLAlchemy store over ``auth_sessions`` and ``linked_accounts``."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], clock: Clock = get_now):
        self._session_maker = session_maker
        self._clock = clock

    async def get(self, session_id: str) -> Session | None:
        async with self._session_maker() as db:
            repo = SessionRepository(db)
            record = await repo.get(session_id)
            if record is None:
                return None
            return _to_session(record, await repo.get_links(session_id))

    async def put(self, session: Session, expected_version: int | None) -> Session:
        new_version = (expected_version or 0) + 1
        values = _record_values(session, new_version)
        now = self._clock()
        links = {
            provider_id: (
                identity.subject_id,
                provider_id == session.primary_provider_id,
                session.linked_at.get(provider_id, now),
            )
            for provider_id, identity in session.identities.items()
        }

        async with self._session_maker() as db:
            repo = SessionRepository(db)
            try:
                if expected_version is None:
                    repo.add(SessionRecord(session_id=session.session_id, **values))
                    await db.flush()
                elif not await repo.update_if_version(session.session_id, expected_version, values):
                    await db.rollback()
                    raise _conflict(session.session_id, expected_version)

                await repo.sync_links(session.session_id, links)
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise await self._classify_integrity_error(db, session, expected_version) from e

        return session.model_copy(update={"version": new_version})

    async def _classify_integrity_error(
        self, db: AsyncSession, session: Session, expected_version: int | None
    ) -> Exception:
        repo = SessionRepository(db)
        for identity in session.identities.values():
            owner = await repo.find_link_owner(identity.provider_id, identity.subject_id)
            if owner is not None and owner != session.session_id:
                return IdentityAlreadyLinkedElsewhere(details={"provider_id": identity.provider_id})
        # Primary key collision: another writer created the session first
        return _conflict(session.session_id, expected_version)

    async def delete(self, session_id: str) -> bool:
        async with self._session_maker() as db:
            deleted = await SessionRepository(db).delete(session_id)
            await db.commit()
        return deleted

    async def find_link(self, provider_id: str, subject_id: str) -> str | None:
        async with self._session_maker() as db:
            return await SessionRepository(db).find_link_owner(provider_id, subject_id)

    async def purge_expired(self) -> int:
        async with self._session_maker() as db:
            deleted = await SessionRepository(db).delete_expired(
                self._clock(), SessionStatus.EXPIRED.value
            )
            await db.commit()
        return deleted
