"""Session and linked-account repository."""

from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from multiauth.models import LinkedAccountRecord, SessionRecord


class SessionRepository:
    """Repository for SessionRecord and LinkedAccountRecord models."""

    def __init__(self, db: AsyncSession):
        """
        Initialize the repository.

        Args:
            db: AsyncSession database session
        """
        self.db = db

    async def get(self, session_id: str) -> SessionRecord | None:
        result = await self.db.execute(
            select(SessionRecord).where(SessionRecord.session_id == session_id)
        )
        return result.scalar_one_or_none()

    async def get_links(self, session_id: str) -> list[LinkedAccountRecord]:
        result = await self.db.execute(
            select(LinkedAccountRecord).where(LinkedAccountRecord.session_id == session_id)
        )
        return list(result.scalars().all())

    async def find_link_owner(self, provider_id: str, subject_id: str) -> str | None:
        """
        Find the session a provider identity is linked to.

        Args:
            provider_id: Provider id
            subject_id: Provider-scoped subject id

        Returns:
            Owning session id, or None
        """
        result = await self.db.execute(
            select(LinkedAccountRecord.session_id).where(
                LinkedAccountRecord.provider_id == provider_id,
                LinkedAccountRecord.subject_id == subject_id,
            )
        )
        return result.scalar_one_or_none()

    def add(self, record: SessionRecord) -> None:
        self.db.add(record)

    async def update_if_version(self, session_id: str, expected_version: int, values: dict) -> bool:
        """
        Conditionally update a session row.

        Args:
            session_id: Session to update
            expected_version: Version the caller read
            values: Column values to write (must include the new version)

        Returns:
            True if exactly one row matched the expected version
        """
        result = await self.db.execute(
            update(SessionRecord)
            .where(
                SessionRecord.session_id == session_id,
                SessionRecord.version == expected_version,
            )
            .values(**values)
        )
        return (result.rowcount or 0) == 1  # type: ignore[union-attr]

    async def sync_links(
        self,
        session_id: str,
        identities: dict[str, tuple[str, bool, datetime]],
    ) -> None:
        """
        Make the session's linked accounts match ``identities``.

        Args:
            session_id: Owning session
            identities: provider_id -> (subject_id, is_primary, linked_at); the
                timestamp is only written for newly added links
        """
        existing = {link.provider_id: link for link in await self.get_links(session_id)}

        for provider_id, link in existing.items():
            wanted = identities.get(provider_id)
            if wanted is None or wanted[0] != link.subject_id:
                await self.db.delete(link)
        # Deletes must reach the database before re-inserting a replaced provider
        await self.db.flush()

        for provider_id, (subject_id, is_primary, linked_at) in identities.items():
            link = existing.get(provider_id)
            if link is not None and link.subject_id == subject_id:
                link.is_primary = is_primary
                continue
            self.db.add(
                LinkedAccountRecord(
                    session_id=session_id,
                    provider_id=provider_id,
                    subject_id=subject_id,
                    is_primary=is_primary,
                    linked_at=linked_at,
                )
            )
        await self.db.flush()

    async def delete(self, session_id: str) -> bool:
        # Explicit link delete: SQLite only cascades with foreign_keys=ON
        await self.db.execute(
            delete(LinkedAccountRecord).where(LinkedAccountRecord.session_id == session_id)
        )
        result = await self.db.execute(
            delete(SessionRecord).where(SessionRecord.session_id == session_id)
        )
        return (result.rowcount or 0) > 0  # type: ignore[union-attr]

    async def delete_expired(self, now: datetime, expired_status: str) -> int:
        """
        Delete sessions past expiry or flagged expired.

        Returns:
            Number of deleted sessions
        """
        condition = or_(SessionRecord.expires_at <= now, SessionRecord.status == expired_status)
        ids = (await self.db.execute(select(SessionRecord.session_id).where(condition))).scalars().all()
        if not ids:
            return 0

        await self.db.execute(
            delete(LinkedAccountRecord).where(LinkedAccountRecord.session_id.in_(ids))
        )
        await self.db.execute(delete(SessionRecord).where(SessionRecord.session_id.in_(ids)))
        return len(ids)
