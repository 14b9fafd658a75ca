import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest-sessions.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-signing-key-0123456789abcdef0123456789")
os.environ.setdefault("UPSTREAM_API_KEY", "test-upstream-api-key")

import json

import httpx
import pytest
from typing import AsyncGenerator
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from session_gateway.auth.dependencies import build_token_issuer, get_identity_client, get_secret_cache
from session_gateway.config import settings
from session_gateway.core.rate_limit import reset_rate_limiter_state
from session_gateway.database import Base, get_session_factory
from session_gateway.main import app
from session_gateway.models import RefreshToken  # noqa: F401
from session_gateway.services.identity_client import IdentityClient
from session_gateway.services.secret_cache import EnvSecretProvider, SecretCache
from session_gateway.services.token_store import TokenStore

VALID_OTP = "123456"
TEST_USER_ID = "user-1"


@pytest.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/sessions.db", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture
def secret_cache() -> SecretCache:
    return SecretCache(
        EnvSecretProvider(
            {
                settings.SIGNING_KEY_SECRET_NAME: settings.JWT_SECRET_KEY,
                settings.API_KEY_SECRET_NAME: settings.UPSTREAM_API_KEY,
            }
        ),
        ttl_seconds=300,
    )


@pytest.fixture
def issuer(secret_cache):
    return build_token_issuer(settings, secret_cache)


@pytest.fixture
def store(session_factory) -> TokenStore:
    return TokenStore(session_factory, timeout_seconds=5.0)


def identity_handler(request: httpx.Request) -> httpx.Response:
    if request.headers.get("X-API-Key") != settings.UPSTREAM_API_KEY:
        return httpx.Response(403, json={"detail": "Forbidden"})
    body = json.loads(request.content or b"{}")
    if request.url.path == "/auth/request-otp":
        return httpx.Response(200, json={"success": True, "message": "OTP sent"})
    if request.url.path == "/auth/verify-otp":
        if body.get("otp") != VALID_OTP:
            return httpx.Response(401, json={"detail": "Invalid or expired OTP"})
        return httpx.Response(200, json={"user": {"id": TEST_USER_ID, "email": body["email"]}})
    if request.url.path == "/auth/validate-session":
        return httpx.Response(200, json={"valid": True})
    return httpx.Response(404, json={"detail": "Not found"})


@pytest.fixture
def identity_client(secret_cache) -> IdentityClient:
    return IdentityClient(
        "http://identity.test",
        secret_cache,
        api_key_name=settings.API_KEY_SECRET_NAME,
        transport=httpx.MockTransport(identity_handler),
    )


@pytest.fixture
def override_dependencies(session_factory, secret_cache, identity_client):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_secret_cache] = lambda: secret_cache
    app.dependency_overrides[get_identity_client] = lambda: identity_client
    yield app
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def client(override_dependencies) -> AsyncGenerator[AsyncClient, None]:
    await reset_rate_limiter_state()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    await reset_rate_limiter_state()


@pytest.fixture
async def signed_in(client: AsyncClient) -> httpx.Response:
    response = await client.post(
        f"{settings.API_V1_STR}/auth/verify-otp",
        json={"email": "member@example.com", "otp": VALID_OTP},
    )
    assert response.status_code == 200
    return response
