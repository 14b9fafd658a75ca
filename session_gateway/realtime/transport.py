import json
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException


class TransportClosed(Exception):
    def __init__(self, code: int | None, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"connection closed ({code}) {reason}".strip())


class Transport:
    """One open socket. ``RealtimeConnection`` only talks to this interface."""

    async def open(self, url: str, headers: dict[str, str]) -> None:
        raise NotImplementedError

    async def send(self, payload: dict[str, Any]) -> None:
        raise NotImplementedError

    async def receive(self) -> dict[str, Any]:
        """Next decoded frame. Raises ``TransportClosed`` once the socket is gone."""
        raise NotImplementedError

    async def close(self, code: int = 1000, reason: str = "") -> None:
        raise NotImplementedError


class WebsocketsTransport(Transport):
    def __init__(self, *, open_timeout: float = 10.0):
        self._open_timeout = open_timeout
        self._socket = None

    async def open(self, url: str, headers: dict[str, str]) -> None:
        try:
            self._socket = await websockets.connect(
                url,
                additional_headers=headers or None,
                open_timeout=self._open_timeout,
                ping_interval=None,
            )
        except (WebSocketException, OSError, TimeoutError) as exc:
            raise TransportClosed(None, exc.__class__.__name__) from exc

    async def send(self, payload: dict[str, Any]) -> None:
        if self._socket is None:
            raise TransportClosed(None, "not connected")
        try:
            await self._socket.send(json.dumps(payload))
        except ConnectionClosed as exc:
            raise _closed(exc) from exc

    async def receive(self) -> dict[str, Any]:
        if self._socket is None:
            raise TransportClosed(None, "not connected")
        try:
            raw = await self._socket.recv()
        except ConnectionClosed as exc:
            raise _closed(exc) from exc
        return json.loads(raw)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._socket is not None:
            await self._socket.close(code=code, reason=reason)
            self._socket = None


def _closed(exc: ConnectionClosed) -> TransportClosed:
    if exc.rcvd is None:
        return TransportClosed(None, "connection lost")
    return TransportClosed(exc.rcvd.code, exc.rcvd.reason)
