import logging
from collections.abc import Awaitable, Callable, Iterable

from session_gateway.core.exceptions import StoreUnavailable
from session_gateway.services.token_issuer import token_fingerprint
from session_gateway.services.token_store import TokenStore

logger = logging.getLogger(__name__)

UserRevokedHook = Callable[[str], Awaitable[None]]


class RevocationService:
    """Best-effort revocation used by logout. Failures are logged, never raised."""

    def __init__(self, store: TokenStore, *, on_user_revoked: UserRevokedHook | None = None):
        self._store = store
        self._on_user_revoked = on_user_revoked

    async def revoke_presented(self, token_values: Iterable[str]) -> int:
        revoked = 0
        for value in token_values:
            try:
                if await self._store.revoke_token(value):
                    revoked += 1
            except StoreUnavailable:
                logger.warning("Failed to revoke refresh token %s during logout", token_fingerprint(value))
        return revoked

    async def revoke_everywhere(self, user_id: str) -> int:
        try:
            revoked = await self._store.revoke_all_for_user(user_id)
        except StoreUnavailable:
            logger.warning("Failed to revoke all refresh tokens for user %s", user_id)
            return 0
        if self._on_user_revoked is not None:
            await self._on_user_revoked(user_id)
        logger.info("Revoked %s refresh token(s) for user %s", revoked, user_id)
        return revoked

    async def logout(self, token_values: list[str], user_id: str | None = None) -> None:
        await self.revoke_presented(token_values)
        if user_id:
            await self.revoke_everywhere(user_id)
