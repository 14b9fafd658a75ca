import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError
from pydantic import ValidationError

from session_gateway.auth.schemas import SessionUser, TokenClaims, TokenType
from session_gateway.core.exceptions import ExpiredToken, MalformedToken
from session_gateway.services.secret_cache import SecretCache

# Single fixed HMAC scheme. Tokens never choose their own algorithm.
ALGORITHM = "HS256"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_fingerprint(token: str) -> str:
    """Short, log-safe identifier for a token value."""
    return hash_token(token)[:12]


def _to_datetime(timestamp: int) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


@dataclass(frozen=True)
class IssuedToken:
    value: str
    claims: TokenClaims

    @property
    def issued_at(self) -> datetime:
        return _to_datetime(self.claims.iat)

    @property
    def expires_at(self) -> datetime:
        return _to_datetime(self.claims.exp)

    @property
    def expires_in(self) -> int:
        return self.claims.exp - self.claims.iat


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken


class TokenIssuer:
    def __init__(
        self,
        secret_cache: SecretCache,
        *,
        signing_key_name: str,
        issuer: str,
        access_audience: str,
        refresh_audience: str,
        ws_audience: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        ws_ticket_ttl: timedelta,
    ) -> None:
        self._secret_cache = secret_cache
        self._signing_key_name = signing_key_name
        self._issuer = issuer
        self._access_audience = access_audience
        self._refresh_audience = refresh_audience
        self._ws_audience = ws_audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.ws_ticket_ttl = ws_ticket_ttl

    @staticmethod
    def new_session_id() -> str:
        return secrets.token_hex(32)

    async def _signing_key(self) -> str:
        return await self._secret_cache.get(self._signing_key_name)

    async def _sign(
        self,
        user: SessionUser,
        *,
        token_type: TokenType,
        audience: str,
        ttl: timedelta,
        now: datetime | None,
    ) -> IssuedToken:
        issued_at = int((now or datetime.now(timezone.utc)).timestamp())
        claims = TokenClaims(
            iss=self._issuer,
            aud=audience,
            iat=issued_at,
            exp=issued_at + int(ttl.total_seconds()),
            jti=secrets.token_hex(16),
            user_id=user.user_id,
            email=user.email,
            session_id=user.session_id,
            token_type=token_type,
        )
        value = jwt.encode(claims.model_dump(), await self._signing_key(), algorithm=ALGORITHM)
        return IssuedToken(value=value, claims=claims)

    async def issue_access_token(
        self, user: SessionUser, ttl: timedelta | None = None, now: datetime | None = None
    ) -> IssuedToken:
        return await self._sign(
            user, token_type="user_access", audience=self._access_audience, ttl=ttl or self.access_ttl, now=now
        )

    async def issue_refresh_token(
        self, user: SessionUser, ttl: timedelta | None = None, now: datetime | None = None
    ) -> IssuedToken:
        return await self._sign(
            user, token_type="user_refresh", audience=self._refresh_audience, ttl=ttl or self.refresh_ttl, now=now
        )

    async def issue_ws_ticket(self, user: SessionUser) -> IssuedToken:
        return await self._sign(
            user, token_type="ws_ticket", audience=self._ws_audience, ttl=self.ws_ticket_ttl, now=None
        )

    async def issue_pair(self, user: SessionUser) -> TokenPair:
        now = datetime.now(timezone.utc)
        return TokenPair(
            access=await self.issue_access_token(user, now=now),
            refresh=await self.issue_refresh_token(user, now=now),
        )

    async def _decode(
        self,
        token: str,
        *,
        audience: str,
        token_type: TokenType,
        malformed_code: str | None = None,
        expired_code: str | None = None,
    ) -> TokenClaims:
        if not token or not isinstance(token, str):
            raise MalformedToken(code=malformed_code)
        key = await self._signing_key()
        try:
            payload = jwt.decode(token, key, algorithms=[ALGORITHM], audience=audience, issuer=self._issuer)
        except ExpiredSignatureError as exc:
            raise ExpiredToken(code=expired_code) from exc
        except JWTError as exc:
            raise MalformedToken(code=malformed_code) from exc

        try:
            claims = TokenClaims.model_validate(payload)
        except ValidationError as exc:
            raise MalformedToken("Invalid token structure", code=malformed_code) from exc
        if claims.token_type != token_type:
            raise MalformedToken("Unexpected token type", code=malformed_code)
        return claims

    async def decode_access_token(self, token: str) -> TokenClaims:
        return await self._decode(token, audience=self._access_audience, token_type="user_access")

    async def decode_refresh_token(self, token: str) -> TokenClaims:
        return await self._decode(
            token,
            audience=self._refresh_audience,
            token_type="user_refresh",
            malformed_code="INVALID_REFRESH_TOKEN",
            expired_code="REFRESH_TOKEN_EXPIRED",
        )

    async def decode_ws_ticket(self, token: str) -> TokenClaims:
        return await self._decode(token, audience=self._ws_audience, token_type="ws_ticket")
