"""Signing key and API key lookup with a process-local TTL cache.

The hosting model may hand any request to a cold process, so the cache never
assumes it is warm: an empty or stale entry is simply fetched again.
"""
import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import httpx

from session_gateway.core.exceptions import SecretUnavailable

logger = logging.getLogger(__name__)


class SecretProvider:
    async def get_secret(self, name: str) -> str:
        raise NotImplementedError


class EnvSecretProvider(SecretProvider):
    """Serves secrets from configuration, for local development and tests."""

    def __init__(self, values: Mapping[str, str | None]):
        self._values = dict(values)

    async def get_secret(self, name: str) -> str:
        value = self._values.get(name)
        if not value:
            raise SecretUnavailable(f"Secret {name} is not configured")
        return value


class HttpSecretProvider(SecretProvider):
    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def get_secret(self, name: str) -> str:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.get(f"{self._base_url}/secrets/{name}", headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Secret service request for %s failed: %s", name, exc)
            raise SecretUnavailable(f"Could not access secret: {name}") from exc

        if response.status_code >= 400:
            logger.warning("Secret service returned HTTP %s for %s", response.status_code, name)
            raise SecretUnavailable(f"Could not access secret: {name}")

        value = response.json().get("value") if response.content else None
        if not value:
            raise SecretUnavailable(f"Secret {name} is empty")
        return str(value)


@dataclass
class _CachedSecret:
    value: str
    expires_at: float


class SecretCache:
    def __init__(
        self,
        provider: SecretProvider,
        *,
        ttl_seconds: float = 300,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._ttl_seconds = ttl_seconds
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._entries: dict[str, _CachedSecret] = {}
        self._lock = asyncio.Lock()

    def _fresh(self, name: str) -> str | None:
        entry = self._entries.get(name)
        if entry and self._clock() < entry.expires_at:
            return entry.value
        return None

    async def get(self, name: str) -> str:
        cached = self._fresh(name)
        if cached is not None:
            return cached

        async with self._lock:
            # another coroutine may have filled the entry while we waited
            cached = self._fresh(name)
            if cached is not None:
                return cached
            try:
                value = await asyncio.wait_for(self._provider.get_secret(name), timeout=self._timeout_seconds)
            except asyncio.TimeoutError as exc:
                logger.warning("Timed out fetching secret %s", name)
                raise SecretUnavailable(f"Could not access secret: {name}") from exc
            if not value:
                raise SecretUnavailable(f"Secret {name} is empty")
            self._entries[name] = _CachedSecret(value=value, expires_at=self._clock() + self._ttl_seconds)
            return value

    def invalidate(self, name: str | None = None) -> None:
        if name is None:
            self._entries.clear()
        else:
            self._entries.pop(name, None)
