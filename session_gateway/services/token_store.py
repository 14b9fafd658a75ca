import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from session_gateway.core.exceptions import StoreUnavailable
from session_gateway.models.refresh_token import RefreshToken
from session_gateway.services.token_issuer import hash_token

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenStore:
    """Refresh-token persistence.

    Every operation runs in its own short transaction. Concurrent rotations are
    arbitrated only by the conditional update in ``rotate``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, timeout_seconds: float = 5.0):
        self._session_factory = session_factory
        self._timeout_seconds = timeout_seconds

    async def _run(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _in_session() -> T:
            async with self._session_factory() as db:
                return await work(db)

        try:
            return await asyncio.wait_for(_in_session(), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.error("Token store %s timed out after %ss", operation, self._timeout_seconds)
            raise StoreUnavailable() from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Token store %s failed: %s", operation, exc)
            raise StoreUnavailable() from exc

    async def insert(self, record: RefreshToken) -> RefreshToken:
        async def work(db: AsyncSession) -> RefreshToken:
            record.is_active = True
            db.add(record)
            await db.commit()
            return record

        return await self._run("insert", work)

    async def find_active(self, token_value: str, user_id: str | None = None) -> RefreshToken | None:
        async def work(db: AsyncSession) -> RefreshToken | None:
            stmt = select(RefreshToken).where(
                RefreshToken.token_hash == hash_token(token_value),
                RefreshToken.is_active.is_(True),
                RefreshToken.expires_at >= datetime.now(timezone.utc),
            )
            if user_id is not None:
                stmt = stmt.where(RefreshToken.user_id == user_id)
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

        return await self._run("find_active", work)

    async def find_by_value(self, token_value: str) -> RefreshToken | None:
        async def work(db: AsyncSession) -> RefreshToken | None:
            result = await db.execute(select(RefreshToken).where(RefreshToken.token_hash == hash_token(token_value)))
            return result.scalar_one_or_none()

        return await self._run("find_by_value", work)

    @staticmethod
    def _deactivate_stmt(*criteria):
        return (
            update(RefreshToken)
            .where(RefreshToken.is_active.is_(True), *criteria)
            .values(is_active=False, revoked_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    async def _deactivate(self, operation: str, *criteria) -> int:
        async def work(db: AsyncSession) -> int:
            result = await db.execute(self._deactivate_stmt(*criteria))
            await db.commit()
            return result.rowcount or 0

        return await self._run(operation, work)

    async def rotate(self, token_value: str, user_id: str, replacement: RefreshToken) -> bool:
        """Retire ``token_value`` and persist ``replacement`` in one transaction.

        Returns False, with nothing written, when the token was no longer active.
        """

        async def work(db: AsyncSession) -> bool:
            result = await db.execute(
                self._deactivate_stmt(
                    RefreshToken.token_hash == hash_token(token_value),
                    RefreshToken.user_id == user_id,
                )
            )
            if (result.rowcount or 0) != 1:
                await db.rollback()
                return False
            replacement.is_active = True
            db.add(replacement)
            await db.commit()
            return True

        return await self._run("rotate", work)

    async def deactivate_if_active(self, token_value: str, user_id: str) -> bool:
        changed = await self._deactivate(
            "deactivate_if_active",
            RefreshToken.token_hash == hash_token(token_value),
            RefreshToken.user_id == user_id,
        )
        return changed == 1

    async def revoke_token(self, token_value: str) -> bool:
        return await self._deactivate("revoke_token", RefreshToken.token_hash == hash_token(token_value)) == 1

    async def revoke_session(self, user_id: str, session_id: str) -> int:
        return await self._deactivate(
            "revoke_session",
            RefreshToken.user_id == user_id,
            RefreshToken.session_id == session_id,
        )

    async def revoke_all_for_user(self, user_id: str) -> int:
        return await self._deactivate("revoke_all_for_user", RefreshToken.user_id == user_id)

    async def touch_last_used(self, record_id: uuid.UUID) -> None:
        async def work(db: AsyncSession) -> None:
            await db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == record_id)
                .values(last_used_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        try:
            await self._run("touch_last_used", work)
        except StoreUnavailable:
            logger.warning("Could not update last_used_at for refresh token %s", record_id)
