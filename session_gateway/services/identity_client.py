import logging
from dataclasses import dataclass
from typing import Any

import httpx

from session_gateway.core.exceptions import UpstreamIdentityFailure
from session_gateway.services.secret_cache import SecretCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityProfile:
    id: str
    email: str


def _upstream_detail(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        return str(detail) if detail else None
    return None


class IdentityClient:
    """Client for the upstream identity-proof API (OTP delivery and verification)."""

    def __init__(
        self,
        base_url: str,
        secret_cache: SecretCache,
        *,
        api_key_name: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._secret_cache = secret_cache
        self._api_key_name = api_key_name
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def _post(
        self, path: str, payload: dict[str, Any], *, extra_headers: dict[str, str] | None = None, code: str
    ) -> httpx.Response:
        headers = {"X-API-Key": await self._secret_cache.get(self._api_key_name)}
        headers.update(extra_headers or {})
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.post(f"{self._base_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("Identity API %s timed out", path)
            raise UpstreamIdentityFailure("Identity service timed out", code="UPSTREAM_TIMEOUT", status_code=504) from exc
        except httpx.HTTPError as exc:
            logger.warning("Identity API %s unreachable: %s", path, exc)
            raise UpstreamIdentityFailure("Identity service unavailable", code="UPSTREAM_UNAVAILABLE", status_code=502) from exc

        if response.status_code >= 400:
            logger.info("Identity API %s returned HTTP %s", path, response.status_code)
            raise UpstreamIdentityFailure(
                _upstream_detail(response) or "Identity service request failed",
                code=code,
                status_code=response.status_code,
            )
        return response

    async def request_otp(self, email: str) -> dict[str, Any]:
        response = await self._post("/auth/request-otp", {"email": email}, code="OTP_REQUEST_FAILED")
        return response.json() if response.content else {}

    async def verify_otp(self, email: str, otp: str) -> IdentityProfile:
        response = await self._post("/auth/verify-otp", {"email": email, "otp": otp}, code="OTP_VERIFICATION_FAILED")
        user = (response.json() or {}).get("user") if response.content else None
        if not isinstance(user, dict) or not user.get("id") or not user.get("email"):
            logger.error("Identity API returned no usable user profile")
            raise UpstreamIdentityFailure("Invalid user data received", code="INVALID_USER_DATA", status_code=502)
        return IdentityProfile(id=str(user["id"]), email=str(user["email"]))

    async def validate_session(self, authorization: str, cookie_header: str | None = None) -> dict[str, Any]:
        headers = {"Authorization": authorization}
        if cookie_header:
            headers["Cookie"] = cookie_header
        response = await self._post("/auth/validate-session", {}, extra_headers=headers, code="SESSION_INVALID")
        return response.json() if response.content else {}
