"""Client half of the realtime handshake: one authenticated socket with reconnects."""
import asyncio
import contextlib
import enum
import logging
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote, urlencode

from session_gateway.core.exceptions import CredentialError, ServiceUnavailable
from session_gateway.realtime import protocol
from session_gateway.realtime.credentials import SessionCredentials
from session_gateway.realtime.transport import Transport, TransportClosed, WebsocketsTransport

logger = logging.getLogger(__name__)


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class AuthFailureKind(str, enum.Enum):
    SESSION_EXPIRED = "session_expired"
    REJECTED = "rejected"


@dataclass
class RealtimeOptions:
    url: str
    credential_mode: Literal["query", "cookie"] = "query"
    auth_timeout: float = 15.0
    heartbeat_interval: float = 30.0
    reconnect_base_delay: float = 3.0
    reconnect_factor: float = 2.0
    reconnect_max_delay: float = 30.0
    max_reconnect_attempts: int = 10
    queue_limit: int = 100


def backoff_delay(attempt: int, *, base: float, factor: float, max_delay: float) -> float:
    return min(base * factor ** (attempt - 1), max_delay)


def mask_url(url: str) -> str:
    return re.sub(r"(token=)[^&]+", r"\1***", url)


def _failure_kind(code: str | None, close_code: int | None = None) -> AuthFailureKind:
    if code in protocol.RECOVERABLE_AUTH_CODES:
        return AuthFailureKind.SESSION_EXPIRED
    if code is None and close_code == protocol.CLOSE_SESSION_EXPIRED:
        return AuthFailureKind.SESSION_EXPIRED
    return AuthFailureKind.REJECTED


class RealtimeConnection:
    _BUSY_STATES = frozenset(
        {
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.AUTHENTICATED,
            ConnectionState.RECONNECTING,
        }
    )

    def __init__(
        self,
        options: RealtimeOptions,
        credentials: SessionCredentials,
        *,
        transport_factory: Callable[[], Transport] = WebsocketsTransport,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_state_change: Callable[[ConnectionState], None] | None = None,
        on_message: Callable[[dict[str, Any]], None] | None = None,
        on_auth_failure: Callable[[AuthFailureKind, str | None], None] | None = None,
    ):
        self.options = options
        self.credentials = credentials
        self._transport_factory = transport_factory
        # only reconnect delays go through this; heartbeats use asyncio.sleep
        self._sleep = sleep
        self.on_state_change = on_state_change
        self.on_message = on_message
        self.on_auth_failure = on_auth_failure

        self._state = ConnectionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._transport: Transport | None = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._queue: deque[dict[str, Any]] = deque(maxlen=options.queue_limit)
        self._closing = False
        self._epoch = 0
        self.attempts = 0
        self.connection_id: str | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def queued(self) -> int:
        return len(self._queue)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("Realtime state %s -> %s", self._state.value, state.value)
        self._state = state
        if self.on_state_change is not None:
            self.on_state_change(state)

    async def connect(self) -> bool:
        """Open the socket and wait for the server's verdict. True once authenticated."""
        if self._state in self._BUSY_STATES:
            logger.debug("connect() ignored while %s", self._state.value)
            return self._state is ConnectionState.AUTHENTICATED
        self._closing = False
        self.attempts = 0
        self._set_state(ConnectionState.CONNECTING)
        return await self._attempt()

    async def _target(self) -> tuple[str, dict[str, str]]:
        user_id = self.credentials.user_id
        if not user_id:
            raise CredentialError("No signed-in user", code="MISSING_TOKEN")
        url = f"{self.options.url.rstrip('/')}/ws/{quote(user_id, safe='')}"
        if self.options.credential_mode == "query":
            ticket = await self.credentials.realtime_token()
            return f"{url}?{urlencode({'token': ticket})}", {}
        cookie = self.credentials.cookie_header()
        return url, ({"Cookie": cookie} if cookie else {})

    def _abandoned(self, epoch: int) -> bool:
        return self._closing or epoch != self._epoch

    async def _attempt(self) -> bool:
        # disconnect() bumps the epoch, so an attempt already in flight cannot outlive it
        epoch = self._epoch
        async with self._lock:
            if self._abandoned(epoch):
                return False
            self._set_state(ConnectionState.CONNECTING)

            try:
                url, headers = await self._target()
            except CredentialError as exc:
                if self._abandoned(epoch):
                    return False
                await self._auth_failed(_failure_kind(exc.code), exc.code)
                return False
            except ServiceUnavailable as exc:
                logger.warning("Realtime credentials unavailable: %s", exc.code)
                if not self._abandoned(epoch):
                    self._schedule_reconnect()
                return False

            transport = self._transport_factory()
            logger.info("Opening realtime socket %s", mask_url(url))
            try:
                await transport.open(url, headers)
            except TransportClosed as exc:
                logger.warning("Realtime socket could not be opened: %s", exc.reason)
                if not self._abandoned(epoch):
                    self._schedule_reconnect()
                return False
            except asyncio.CancelledError:
                with contextlib.suppress(TransportClosed):
                    await transport.close(protocol.CLOSE_NORMAL)
                raise

            if self._abandoned(epoch):
                logger.debug("Closing socket opened after disconnect()")
                with contextlib.suppress(TransportClosed):
                    await transport.close(protocol.CLOSE_NORMAL)
                return False

            self._transport = transport
            self._set_state(ConnectionState.CONNECTED)
            try:
                frame = await asyncio.wait_for(transport.receive(), timeout=self.options.auth_timeout)
            except asyncio.TimeoutError:
                logger.warning("No handshake verdict within %ss", self.options.auth_timeout)
                await self._drop_transport()
                if not self._abandoned(epoch):
                    self._schedule_reconnect()
                return False
            except TransportClosed as exc:
                if self._transport is transport:
                    self._transport = None
                if self._abandoned(epoch):
                    return False
                await self._handle_close(exc.code)
                return False
            except asyncio.CancelledError:
                await self._drop_transport()
                raise

            if self._abandoned(epoch):
                if self._transport is transport:
                    await self._drop_transport()
                else:
                    with contextlib.suppress(TransportClosed):
                        await transport.close(protocol.CLOSE_NORMAL)
                return False

            frame_type = frame.get("type")
            if frame_type == protocol.CONNECTION_ESTABLISHED:
                self.connection_id = frame.get("connection_id")
                self.attempts = 0
                self._set_state(ConnectionState.AUTHENTICATED)
                logger.info("Realtime connection %s authenticated", self.connection_id)
                await self._flush_queue()
                self._reader_task = asyncio.create_task(self._read_loop(transport))
                self._heartbeat_task = asyncio.create_task(self._heartbeat(transport))
                return True

            await self._drop_transport()
            if frame_type == protocol.AUTH_FAILED:
                code = frame.get("code")
                kind = AuthFailureKind.SESSION_EXPIRED if frame.get("recoverable") else _failure_kind(code)
                await self._auth_failed(kind, code)
            else:
                logger.warning("Unexpected handshake frame %r", frame_type)
                self._schedule_reconnect()
            return False

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        with contextlib.suppress(TransportClosed):
            await transport.close(protocol.CLOSE_NORMAL)

    async def _auth_failed(self, kind: AuthFailureKind, code: str | None) -> None:
        logger.warning("Realtime authentication failed (%s): %s", kind.value, code)
        if self.on_auth_failure is not None:
            self.on_auth_failure(kind, code)
        if kind is AuthFailureKind.REJECTED:
            self._set_state(ConnectionState.FAILED)
            return
        try:
            await self.credentials.refresh()
        except CredentialError as exc:
            logger.error("Session could not be refreshed: %s", exc.code)
            self._set_state(ConnectionState.FAILED)
            return
        except ServiceUnavailable as exc:
            logger.warning("Session refresh unavailable: %s", exc.code)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closing:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        if self.attempts >= self.options.max_reconnect_attempts:
            logger.error("Giving up after %s reconnect attempts", self.attempts)
            self._set_state(ConnectionState.FAILED)
            return
        self.attempts += 1
        delay = backoff_delay(
            self.attempts,
            base=self.options.reconnect_base_delay,
            factor=self.options.reconnect_factor,
            max_delay=self.options.reconnect_max_delay,
        )
        logger.info(
            "Reconnect attempt %s/%s in %.1fs", self.attempts, self.options.max_reconnect_attempts, delay
        )
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        if not self._closing:
            await self._attempt()

    async def _handle_close(self, code: int | None, auth_code: str | None = None) -> None:
        self._stop_heartbeat()
        if self._closing:
            self._set_state(ConnectionState.DISCONNECTED)
            return
        if auth_code is not None or code in protocol.AUTH_CLOSE_CODES:
            await self._auth_failed(_failure_kind(auth_code, code), auth_code or str(code))
        elif code in protocol.CLEAN_CLOSE_CODES:
            logger.info("Realtime socket closed cleanly (%s)", code)
            self._set_state(ConnectionState.DISCONNECTED)
        else:
            logger.warning("Realtime socket closed abnormally (%s)", code)
            self._schedule_reconnect()

    async def _read_loop(self, transport: Transport) -> None:
        auth_code = None
        while True:
            try:
                frame = await transport.receive()
            except TransportClosed as exc:
                close_code = exc.code
                break
            frame_type = frame.get("type")
            if frame_type in (protocol.PONG, protocol.HEARTBEAT_ACK):
                continue
            if frame_type == protocol.SESSION_EXPIRING:
                await self._renew(transport)
                continue
            if frame_type == protocol.AUTH_FAILED:
                auth_code = frame.get("code")
                continue
            if self.on_message is not None:
                self.on_message(frame)

        if self._transport is transport:
            self._transport = None
        await self._handle_close(close_code, auth_code)

    async def _renew(self, transport: Transport) -> None:
        try:
            await self.credentials.refresh()
            token = await self.credentials.realtime_token()
            await transport.send({"type": protocol.REAUTHENTICATE, "token": token})
        except (CredentialError, ServiceUnavailable) as exc:
            logger.warning("Realtime session could not be renewed: %s", exc.code)
        except TransportClosed:
            logger.debug("Socket closed while renewing the session")

    async def _heartbeat(self, transport: Transport) -> None:
        while True:
            await asyncio.sleep(self.options.heartbeat_interval)
            try:
                await transport.send({"type": protocol.HEARTBEAT, "timestamp": int(time.time())})
            except TransportClosed:
                return

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _flush_queue(self) -> None:
        while self._queue and self._transport is not None:
            payload = self._queue.popleft()
            try:
                await self._transport.send(payload)
            except TransportClosed:
                self._queue.appendleft(payload)
                return

    async def send(self, payload: dict[str, Any]) -> bool:
        """Send now when authenticated, otherwise queue. Returns True if sent."""
        if self._state is ConnectionState.AUTHENTICATED and self._transport is not None:
            try:
                await self._transport.send(payload)
                return True
            except TransportClosed:
                logger.debug("Send failed, queueing message")
        if len(self._queue) == self._queue.maxlen:
            logger.warning("Realtime queue full, dropping oldest message")
        self._queue.append(payload)
        return False

    async def disconnect(self) -> None:
        self._closing = True
        self._epoch += 1
        current = asyncio.current_task()

        reconnect, self._reconnect_task = self._reconnect_task, None
        if reconnect is not None and reconnect is not current and not reconnect.done():
            reconnect.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reconnect

        self._stop_heartbeat()
        await self._drop_transport()

        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not current and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        self._set_state(ConnectionState.DISCONNECTED)
