from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from typing import Annotated

from fastapi import Depends, Header, Request

from session_gateway.core.exceptions import RateLimited


class SlidingWindowRateLimiter:
    def __init__(self) -> None:
        self._entries: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

    async def allow(self, key: str, *, limit: int, window_seconds: int) -> tuple[bool, int]:
        now = time.monotonic()
        async with self._lock:
            bucket = self._entries.setdefault(key, deque())
            boundary = now - window_seconds
            while bucket and bucket[0] <= boundary:
                bucket.popleft()
            if len(bucket) >= limit:
                retry_after = max(int(window_seconds - (now - bucket[0])) + 1, 1)
                return False, retry_after
            bucket.append(now)
            return True, 0

    async def reset(self) -> None:
        async with self._lock:
            self._entries.clear()


_rate_limiter = SlidingWindowRateLimiter()


async def reset_rate_limiter_state() -> None:
    await _rate_limiter.reset()


async def _json_field_values(request: Request, fields: tuple[str, ...]) -> list[str]:
    content_type = (request.headers.get("content-type") or "").lower()
    if not fields or "application/json" not in content_type:
        return []
    try:
        payload = json.loads((await request.body()) or b"{}")
    except json.JSONDecodeError:
        return []
    if not isinstance(payload, dict):
        return []
    values = []
    for field in fields:
        value = payload.get(field)
        if value is not None:
            values.append(f"{field}={str(value).strip().lower()}")
    return values


def rate_limit_dependency(
    *,
    scope: str,
    limit: int,
    window_seconds: int,
    json_fields: tuple[str, ...] = (),
):
    """Per-client sliding window, optionally narrowed by JSON body fields (e.g. the email an OTP goes to)."""

    async def dependency(
        request: Request,
        x_forwarded_for: Annotated[str | None, Header(alias="X-Forwarded-For")] = None,
    ) -> None:
        client_host = request.client.host if request.client else "unknown"
        forwarded = (x_forwarded_for or "").split(",")[0].strip()
        key_parts = [scope, forwarded or client_host or "unknown"]
        key_parts.extend(await _json_field_values(request, json_fields))
        allowed, retry_after = await _rate_limiter.allow(
            ":".join(key_parts),
            limit=limit,
            window_seconds=window_seconds,
        )
        if not allowed:
            raise RateLimited(retry_after)

    return Depends(dependency)
