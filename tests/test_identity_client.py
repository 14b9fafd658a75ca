import httpx
import pytest

from session_gateway.config import settings
from session_gateway.core.exceptions import UpstreamIdentityFailure
from session_gateway.services.identity_client import IdentityClient


def client_for(handler, secret_cache) -> IdentityClient:
    return IdentityClient(
        "http://identity.test/",
        secret_cache,
        api_key_name=settings.API_KEY_SECRET_NAME,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_verify_otp_returns_profile(identity_client):
    profile = await identity_client.verify_otp("member@example.com", "123456")
    assert profile.id == "user-1"
    assert profile.email == "member@example.com"


@pytest.mark.asyncio
async def test_upstream_status_passes_through(identity_client):
    with pytest.raises(UpstreamIdentityFailure) as exc_info:
        await identity_client.verify_otp("member@example.com", "999999")
    assert exc_info.value.status_code == 401
    assert exc_info.value.code == "OTP_VERIFICATION_FAILED"
    assert exc_info.value.detail == "Invalid or expired OTP"


@pytest.mark.asyncio
async def test_profile_without_id_is_rejected(secret_cache):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"user": {"email": "member@example.com"}})

    with pytest.raises(UpstreamIdentityFailure) as exc_info:
        await client_for(handler, secret_cache).verify_otp("member@example.com", "123456")
    assert exc_info.value.status_code == 502
    assert exc_info.value.code == "INVALID_USER_DATA"


@pytest.mark.asyncio
async def test_timeout_maps_to_gateway_timeout(secret_cache):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(UpstreamIdentityFailure) as exc_info:
        await client_for(handler, secret_cache).request_otp("member@example.com")
    assert exc_info.value.status_code == 504
    assert exc_info.value.code == "UPSTREAM_TIMEOUT"


@pytest.mark.asyncio
async def test_connection_error_maps_to_bad_gateway(secret_cache):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamIdentityFailure) as exc_info:
        await client_for(handler, secret_cache).request_otp("member@example.com")
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_validate_session_forwards_credentials(secret_cache):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(
            api_key=request.headers.get("X-API-Key"),
            authorization=request.headers.get("Authorization"),
            cookie=request.headers.get("Cookie"),
        )
        return httpx.Response(200, json={"valid": True})

    result = await client_for(handler, secret_cache).validate_session("Bearer abc", "user_info=x")
    assert result == {"valid": True}
    assert seen == {"api_key": settings.UPSTREAM_API_KEY, "authorization": "Bearer abc", "cookie": "user_info=x"}
