import enum
import logging
from dataclasses import dataclass
from typing import Any

from session_gateway.auth.schemas import SessionUser, TokenClaims
from session_gateway.core.exceptions import (
    MissingCredential,
    ReauthenticationRequired,
    RevokedOrReused,
    StoreUnavailable,
)
from session_gateway.models.refresh_token import RefreshToken
from session_gateway.services.token_issuer import IssuedToken, TokenIssuer, TokenPair, hash_token, token_fingerprint
from session_gateway.services.token_store import TokenStore

logger = logging.getLogger(__name__)


class ReuseCascade(str, enum.Enum):
    """What to revoke when an already-rotated refresh token is presented again."""

    NONE = "none"
    SESSION = "session"
    USER = "user"


@dataclass(frozen=True)
class SessionTokens:
    access: IssuedToken
    refresh: IssuedToken
    user: SessionUser

    @property
    def access_token(self) -> str:
        return self.access.value

    @property
    def refresh_token(self) -> str:
        return self.refresh.value


class RefreshCoordinator:
    def __init__(
        self,
        issuer: TokenIssuer,
        store: TokenStore,
        *,
        reuse_cascade: ReuseCascade = ReuseCascade.SESSION,
    ) -> None:
        self._issuer = issuer
        self._store = store
        self._reuse_cascade = reuse_cascade

    @staticmethod
    def _record_for(pair: TokenPair, user: SessionUser, device_info: dict[str, Any], parent_id=None) -> RefreshToken:
        return RefreshToken(
            user_id=user.user_id,
            email=user.email,
            session_id=user.session_id,
            jti=pair.refresh.claims.jti,
            token_hash=hash_token(pair.refresh.value),
            issued_at=pair.refresh.issued_at,
            expires_at=pair.refresh.expires_at,
            last_used_at=pair.refresh.issued_at,
            parent_id=parent_id,
            device_info=device_info,
        )

    async def open_session(self, user_id: str, email: str, device_info: dict[str, Any] | None = None) -> SessionTokens:
        """Mint and persist the first token pair of a freshly verified identity."""
        user = SessionUser(user_id=user_id, email=email, session_id=self._issuer.new_session_id())
        pair = await self._issuer.issue_pair(user)
        await self._store.insert(
            self._record_for(pair, user, {**(device_info or {}), "created_via": "otp_verification"})
        )
        logger.info("Opened session for user %s", user.user_id)
        return SessionTokens(access=pair.access, refresh=pair.refresh, user=user)

    async def rotate(self, presented_token: str | None, device_info: dict[str, Any] | None = None) -> SessionTokens:
        if not presented_token:
            raise MissingCredential("Refresh token required", code="MISSING_REFRESH_TOKEN")

        claims = await self._issuer.decode_refresh_token(presented_token)

        record = await self._store.find_active(presented_token, claims.user_id)
        if record is None:
            await self._on_rejected(presented_token, claims)
            raise RevokedOrReused()

        await self._store.touch_last_used(record.id)

        user = SessionUser(user_id=record.user_id, email=record.email, session_id=record.session_id)
        pair = await self._issuer.issue_pair(user)
        replacement = self._record_for(
            pair, user, {**(device_info or {}), "created_via": "token_refresh"}, parent_id=record.id
        )

        try:
            rotated = await self._store.rotate(presented_token, record.user_id, replacement)
        except StoreUnavailable as exc:
            if await self._retired(presented_token):
                # the commit landed but its outcome was lost; the replacement never reached the caller
                logger.error(
                    "Refresh token %s retired but its replacement could not be delivered for user %s",
                    token_fingerprint(presented_token),
                    user.user_id,
                )
                raise ReauthenticationRequired() from exc
            raise

        if not rotated:
            # a concurrent rotation consumed the token between our read and our write
            logger.warning(
                "Refresh token %s lost a rotation race for user %s",
                token_fingerprint(presented_token),
                record.user_id,
            )
            await self._cascade(claims)
            raise RevokedOrReused()

        logger.info("Rotated refresh token %s for user %s", token_fingerprint(presented_token), user.user_id)
        return SessionTokens(access=pair.access, refresh=pair.refresh, user=user)

    async def _retired(self, presented_token: str) -> bool:
        try:
            existing = await self._store.find_by_value(presented_token)
        except StoreUnavailable:
            return False
        return existing is not None and not existing.is_active

    async def _on_rejected(self, presented_token: str, claims: TokenClaims) -> None:
        try:
            existing = await self._store.find_by_value(presented_token)
        except StoreUnavailable:
            logger.warning("Could not check refresh token %s for reuse", token_fingerprint(presented_token))
            return
        if existing is not None and not existing.is_active:
            logger.warning(
                "Reuse of retired refresh token %s for user %s",
                token_fingerprint(presented_token),
                claims.user_id,
            )
            await self._cascade(claims)

    async def _cascade(self, claims: TokenClaims) -> None:
        if self._reuse_cascade == ReuseCascade.NONE:
            return
        try:
            if self._reuse_cascade == ReuseCascade.USER:
                revoked = await self._store.revoke_all_for_user(claims.user_id)
            else:
                revoked = await self._store.revoke_session(claims.user_id, claims.session_id)
        except StoreUnavailable:
            logger.exception("Reuse cascade failed for user %s", claims.user_id)
            return
        logger.warning(
            "Reuse cascade (%s) revoked %s refresh token(s) for user %s",
            self._reuse_cascade.value,
            revoked,
            claims.user_id,
        )
