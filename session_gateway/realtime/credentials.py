import logging

import httpx

from session_gateway.core.exceptions import CredentialError, MissingCredential, ServiceUnavailable

logger = logging.getLogger(__name__)


class SessionCredentials:
    """What a realtime client needs to know about the signed-in session."""

    user_id: str | None = None
    access_token: str | None = None

    async def refresh(self) -> None:
        raise NotImplementedError

    async def realtime_token(self) -> str:
        raise NotImplementedError

    def cookie_header(self) -> str | None:
        return None


class GatewaySessionCredentials(SessionCredentials):
    """Session state kept against the gateway's HTTP endpoints.

    The refresh cookie lives only in the httpx cookie jar and is never handed
    to callers. Refresh calls carry no bearer header so the cookie is the
    credential the gateway rotates.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        api_prefix: str = "/api/v1/auth",
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )
        self._prefix = api_prefix
        self.user_id = None
        self.access_token = None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.post(f"{self._prefix}{path}", **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Gateway %s request failed: %s", path, exc.__class__.__name__)
            raise ServiceUnavailable("Gateway unreachable") from exc

        if response.status_code == 401:
            body = _json_or_empty(response)
            raise CredentialError(body.get("detail"), code=body.get("code"))
        if response.status_code >= 500:
            raise ServiceUnavailable(code=_json_or_empty(response).get("code"))
        response.raise_for_status()
        return response

    def _adopt(self, body: dict) -> None:
        self.user_id = body["user"]["id"]
        self.access_token = body["tokens"]["access_token"]

    async def verify_otp(self, email: str, otp: str) -> dict:
        response = await self._post("/verify-otp", json={"email": email, "otp": otp})
        body = response.json()
        self._adopt(body)
        return body

    async def refresh(self) -> None:
        response = await self._post("/refresh")
        self._adopt(response.json())
        logger.info("Session refreshed for user %s", self.user_id)

    async def realtime_token(self) -> str:
        if not self.access_token:
            raise MissingCredential()
        response = await self._post("/ws-token", headers={"Authorization": f"Bearer {self.access_token}"})
        return response.json()["token"]

    async def logout(self, everywhere: bool = False) -> None:
        await self._post("/logout", json={"everywhere": everywhere})
        self.user_id = None
        self.access_token = None

    def cookie_header(self) -> str | None:
        pairs = [f"{cookie.name}={cookie.value}" for cookie in self._client.cookies.jar]
        return "; ".join(pairs) or None


def _json_or_empty(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
