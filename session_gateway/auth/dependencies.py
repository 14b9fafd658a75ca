from datetime import timedelta
from functools import lru_cache
from typing import Annotated, Any

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from session_gateway.auth.cookies import CookiePolicy
from session_gateway.auth.credentials import CredentialExtractor
from session_gateway.auth.schemas import TokenClaims
from session_gateway.config import Settings, settings
from session_gateway.core.exceptions import MissingCredential
from session_gateway.database import get_session_factory
from session_gateway.realtime.manager import connection_registry
from session_gateway.services.identity_client import IdentityClient
from session_gateway.services.refresh_coordinator import RefreshCoordinator, ReuseCascade
from session_gateway.services.revocation_service import RevocationService
from session_gateway.services.secret_cache import EnvSecretProvider, HttpSecretProvider, SecretCache, SecretProvider
from session_gateway.services.token_issuer import TokenIssuer
from session_gateway.services.token_store import TokenStore


def build_secret_provider(config: Settings) -> SecretProvider:
    if config.SECRET_PROVIDER == "http":
        if not config.SECRET_SERVICE_URL:
            raise RuntimeError("SECRET_SERVICE_URL is required when SECRET_PROVIDER=http")
        return HttpSecretProvider(
            config.SECRET_SERVICE_URL,
            token=config.SECRET_SERVICE_TOKEN,
            timeout_seconds=config.SECRET_SERVICE_TIMEOUT_SECONDS,
        )
    return EnvSecretProvider(
        {
            config.SIGNING_KEY_SECRET_NAME: config.JWT_SECRET_KEY,
            config.API_KEY_SECRET_NAME: config.UPSTREAM_API_KEY,
        }
    )


def build_token_issuer(config: Settings, secret_cache: SecretCache) -> TokenIssuer:
    return TokenIssuer(
        secret_cache,
        signing_key_name=config.SIGNING_KEY_SECRET_NAME,
        issuer=config.TOKEN_ISSUER,
        access_audience=config.ACCESS_TOKEN_AUDIENCE,
        refresh_audience=config.REFRESH_TOKEN_AUDIENCE,
        ws_audience=config.WS_TICKET_AUDIENCE,
        access_ttl=timedelta(seconds=config.ACCESS_TOKEN_EXPIRE_SECONDS),
        refresh_ttl=timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS),
        ws_ticket_ttl=timedelta(seconds=config.WS_TICKET_EXPIRE_SECONDS),
    )


@lru_cache
def get_secret_cache() -> SecretCache:
    return SecretCache(
        build_secret_provider(settings),
        ttl_seconds=settings.SECRET_CACHE_TTL_SECONDS,
        timeout_seconds=settings.SECRET_SERVICE_TIMEOUT_SECONDS,
    )


def get_token_issuer(secret_cache: Annotated[SecretCache, Depends(get_secret_cache)]) -> TokenIssuer:
    return build_token_issuer(settings, secret_cache)


def get_token_store(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> TokenStore:
    return TokenStore(session_factory, timeout_seconds=settings.STORE_TIMEOUT_SECONDS)


def get_refresh_coordinator(
    issuer: Annotated[TokenIssuer, Depends(get_token_issuer)],
    store: Annotated[TokenStore, Depends(get_token_store)],
) -> RefreshCoordinator:
    return RefreshCoordinator(issuer, store, reuse_cascade=ReuseCascade(settings.REUSE_CASCADE))


def get_revocation_service(store: Annotated[TokenStore, Depends(get_token_store)]) -> RevocationService:
    return RevocationService(store, on_user_revoked=connection_registry.close_user)


def get_identity_client(secret_cache: Annotated[SecretCache, Depends(get_secret_cache)]) -> IdentityClient:
    return IdentityClient(
        settings.IDENTITY_API_URL,
        secret_cache,
        api_key_name=settings.API_KEY_SECRET_NAME,
        timeout_seconds=settings.IDENTITY_TIMEOUT_SECONDS,
    )


def get_credential_extractor() -> CredentialExtractor:
    return CredentialExtractor()


def get_cookie_policy() -> CookiePolicy:
    return CookiePolicy.from_settings(settings)


def device_info(request: Request) -> dict[str, Any]:
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    return {
        "user_agent": request.headers.get("user-agent", "Unknown"),
        "ip_address": forwarded or (request.client.host if request.client else "Unknown"),
    }


async def require_access_claims(
    request: Request,
    extractor: Annotated[CredentialExtractor, Depends(get_credential_extractor)],
    issuer: Annotated[TokenIssuer, Depends(get_token_issuer)],
) -> TokenClaims:
    token = extractor.bearer(request.headers)
    if not token:
        raise MissingCredential()
    return await issuer.decode_access_token(token)
