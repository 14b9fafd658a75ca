import asyncio

import pytest

from session_gateway.core.exceptions import CredentialError
from session_gateway.realtime import protocol
from session_gateway.realtime.client import (
    AuthFailureKind,
    ConnectionState,
    RealtimeConnection,
    RealtimeOptions,
    backoff_delay,
    mask_url,
)
from session_gateway.realtime.credentials import SessionCredentials
from session_gateway.realtime.transport import Transport, TransportClosed


class FakeCredentials(SessionCredentials):
    def __init__(self, *, refresh_error: Exception | None = None):
        self.user_id = "user-1"
        self.access_token = "access-1"
        self.refresh_error = refresh_error
        self.refreshes = 0
        self.tickets = 0

    async def refresh(self) -> None:
        self.refreshes += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        self.access_token = f"access-{self.refreshes + 1}"

    async def realtime_token(self) -> str:
        self.tickets += 1
        return f"ticket-{self.tickets}"

    def cookie_header(self) -> str | None:
        return "refresh_token=cookie-value"


class FakeTransport(Transport):
    """Scripted socket: frames are fed through ``incoming``."""

    def __init__(self, frames=(), *, fail_open: bool = False):
        self.incoming: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.incoming.put_nowait(frame)
        self.fail_open = fail_open
        self.url = None
        self.headers = None
        self.sent = []
        self.closed = False

    async def open(self, url, headers):
        self.url = url
        self.headers = headers
        if self.fail_open:
            raise TransportClosed(None, "refused")

    async def send(self, payload):
        if self.closed:
            raise TransportClosed(1000)
        self.sent.append(payload)

    async def receive(self):
        item = await self.incoming.get()
        if isinstance(item, TransportClosed):
            self.closed = True
            raise item
        return item

    async def close(self, code=1000, reason=""):
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(TransportClosed(code, reason))

    def server_close(self, code: int):
        self.incoming.put_nowait(TransportClosed(code))


ESTABLISHED = {"type": protocol.CONNECTION_ESTABLISHED, "connection_id": "c-1", "session_id": "s", "expires_at": 0}


class Script:
    """Hands out prepared transports in order; once exhausted every open fails."""

    def __init__(self, *transports):
        self.transports = list(transports)
        self.opened = []

    def __call__(self):
        transport = self.transports.pop(0) if self.transports else FakeTransport(fail_open=True)
        self.opened.append(transport)
        return transport


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_connection(script, credentials=None, sleep=None, **overrides):
    options = RealtimeOptions(
        url="wss://gateway.test/",
        auth_timeout=0.2,
        heartbeat_interval=60,
        reconnect_base_delay=1.0,
        reconnect_factor=2.0,
        reconnect_max_delay=5.0,
        max_reconnect_attempts=5,
        queue_limit=3,
    )
    for key, value in overrides.items():
        setattr(options, key, value)
    states = []
    failures = []
    messages = []
    connection = RealtimeConnection(
        options,
        credentials or FakeCredentials(),
        transport_factory=script,
        sleep=sleep or RecordingSleep(),
        on_state_change=states.append,
        on_auth_failure=lambda kind, code: failures.append((kind, code)),
        on_message=messages.append,
    )
    return connection, states, failures, messages


async def wait_for_state(connection: RealtimeConnection, state: ConnectionState, timeout: float = 2.0):
    async def _poll():
        while connection.state is not state:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


def test_backoff_delay_grows_to_cap():
    delays = [backoff_delay(attempt, base=3.0, factor=2.0, max_delay=30.0) for attempt in range(1, 8)]
    assert delays == [3.0, 6.0, 12.0, 24.0, 30.0, 30.0, 30.0]


def test_mask_url_hides_token():
    assert mask_url("wss://h/ws/u?token=abc.def&x=1") == "wss://h/ws/u?token=***&x=1"


@pytest.mark.asyncio
async def test_connect_authenticates_with_ticket_in_query():
    transport = FakeTransport([ESTABLISHED])
    connection, states, _, _ = make_connection(Script(transport))

    assert await connection.connect() is True
    assert connection.state is ConnectionState.AUTHENTICATED
    assert connection.connection_id == "c-1"
    assert transport.url == "wss://gateway.test/ws/user-1?token=ticket-1"
    assert transport.headers == {}
    assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED, ConnectionState.AUTHENTICATED]
    await connection.disconnect()


@pytest.mark.asyncio
async def test_cookie_mode_sends_no_token_in_url():
    transport = FakeTransport([ESTABLISHED])
    credentials = FakeCredentials()
    connection, _, _, _ = make_connection(Script(transport), credentials, credential_mode="cookie")

    assert await connection.connect() is True
    assert transport.url == "wss://gateway.test/ws/user-1"
    assert transport.headers == {"Cookie": "refresh_token=cookie-value"}
    assert credentials.tickets == 0
    await connection.disconnect()


@pytest.mark.asyncio
async def test_connect_is_not_reentrant():
    transport = FakeTransport()
    script = Script(transport)
    connection, _, _, _ = make_connection(script, auth_timeout=1.0)

    first = asyncio.create_task(connection.connect())
    await asyncio.sleep(0.01)
    assert await connection.connect() is False
    transport.incoming.put_nowait(ESTABLISHED)
    assert await first is True
    assert len(script.opened) == 1
    await connection.disconnect()


@pytest.mark.asyncio
async def test_auth_timeout_schedules_reconnect():
    sleep = RecordingSleep()
    silent = FakeTransport()
    script = Script(silent, FakeTransport([ESTABLISHED]))
    connection, _, _, _ = make_connection(script, sleep=sleep, auth_timeout=0.05)

    assert await connection.connect() is False
    assert silent.closed is True
    await wait_for_state(connection, ConnectionState.AUTHENTICATED)
    assert sleep.delays == [1.0]
    assert connection.attempts == 0
    await connection.disconnect()


@pytest.mark.asyncio
async def test_abnormal_closes_back_off_until_failed():
    sleep = RecordingSleep()
    connection, states, _, _ = make_connection(Script(), sleep=sleep)

    assert await connection.connect() is False
    await wait_for_state(connection, ConnectionState.FAILED)

    assert sleep.delays == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert all(later >= earlier for earlier, later in zip(sleep.delays, sleep.delays[1:]))
    assert connection.attempts == 5
    assert states[-1] is ConnectionState.FAILED


@pytest.mark.asyncio
async def test_abnormal_close_after_authentication_reconnects():
    sleep = RecordingSleep()
    first = FakeTransport([ESTABLISHED])
    second = FakeTransport([ESTABLISHED])
    connection, states, _, _ = make_connection(Script(first, second), sleep=sleep)

    assert await connection.connect() is True
    first.server_close(1006)

    async def _reconnected():
        while second.url is None or connection.state is not ConnectionState.AUTHENTICATED:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_reconnected(), 2.0)
    assert ConnectionState.RECONNECTING in states
    assert sleep.delays == [1.0]
    await connection.disconnect()


@pytest.mark.asyncio
async def test_clean_close_does_not_reconnect():
    sleep = RecordingSleep()
    transport = FakeTransport([ESTABLISHED])
    connection, _, _, _ = make_connection(Script(transport), sleep=sleep)

    assert await connection.connect() is True
    transport.server_close(protocol.CLOSE_GOING_AWAY)
    await wait_for_state(connection, ConnectionState.DISCONNECTED)
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_rejected_handshake_never_retries():
    sleep = RecordingSleep()
    rejected = FakeTransport([{"type": protocol.AUTH_FAILED, "code": "TOKEN_REVOKED", "recoverable": False}])
    credentials = FakeCredentials()
    connection, _, failures, _ = make_connection(Script(rejected), credentials, sleep=sleep)

    assert await connection.connect() is False
    assert connection.state is ConnectionState.FAILED
    assert failures == [(AuthFailureKind.REJECTED, "TOKEN_REVOKED")]
    assert credentials.refreshes == 0
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_expired_session_refreshes_then_reconnects():
    sleep = RecordingSleep()
    expired = FakeTransport([{"type": protocol.AUTH_FAILED, "code": "TOKEN_EXPIRED", "recoverable": True}])
    fresh = FakeTransport([ESTABLISHED])
    credentials = FakeCredentials()
    connection, _, failures, _ = make_connection(Script(expired, fresh), credentials, sleep=sleep)

    assert await connection.connect() is False
    await wait_for_state(connection, ConnectionState.AUTHENTICATED)
    assert failures == [(AuthFailureKind.SESSION_EXPIRED, "TOKEN_EXPIRED")]
    assert credentials.refreshes == 1
    assert fresh.url.endswith("token=ticket-2")
    await connection.disconnect()


@pytest.mark.asyncio
async def test_session_expired_close_with_dead_refresh_fails():
    transport = FakeTransport([ESTABLISHED])
    credentials = FakeCredentials(refresh_error=CredentialError(code="TOKEN_REVOKED"))
    connection, _, failures, _ = make_connection(Script(transport), credentials)

    assert await connection.connect() is True
    transport.incoming.put_nowait({"type": protocol.AUTH_FAILED, "code": "SESSION_EXPIRED", "recoverable": True})
    transport.server_close(protocol.CLOSE_SESSION_EXPIRED)

    await wait_for_state(connection, ConnectionState.FAILED)
    assert failures == [(AuthFailureKind.SESSION_EXPIRED, "SESSION_EXPIRED")]
    assert credentials.refreshes == 1


@pytest.mark.asyncio
async def test_expiry_warning_triggers_reauthentication():
    transport = FakeTransport([ESTABLISHED])
    credentials = FakeCredentials()
    connection, _, _, _ = make_connection(Script(transport), credentials)

    assert await connection.connect() is True
    transport.incoming.put_nowait({"type": protocol.SESSION_EXPIRING, "expires_at": 0, "expires_in": 30})

    async def _reauthenticated():
        while not any(frame.get("type") == protocol.REAUTHENTICATE for frame in transport.sent):
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_reauthenticated(), 2.0)
    assert credentials.refreshes == 1
    assert transport.sent[-1] == {"type": protocol.REAUTHENTICATE, "token": "ticket-2"}
    await connection.disconnect()


@pytest.mark.asyncio
async def test_queue_flushes_in_order_and_drops_oldest():
    transport = FakeTransport()
    connection, _, _, _ = make_connection(Script(transport), auth_timeout=1.0)

    for index in range(5):
        assert await connection.send({"type": "message", "id": index}) is False
    assert connection.queued == 3

    transport.incoming.put_nowait(ESTABLISHED)
    assert await connection.connect() is True
    assert [frame["id"] for frame in transport.sent] == [2, 3, 4]
    assert connection.queued == 0

    assert await connection.send({"type": "message", "id": 5}) is True
    assert transport.sent[-1]["id"] == 5
    await connection.disconnect()


@pytest.mark.asyncio
async def test_messages_reach_callback():
    transport = FakeTransport([ESTABLISHED])
    connection, _, _, messages = make_connection(Script(transport))

    assert await connection.connect() is True
    transport.incoming.put_nowait({"type": protocol.PONG})
    transport.incoming.put_nowait({"type": "chat", "text": "hi"})

    async def _delivered():
        while not messages:
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_delivered(), 2.0)
    assert messages == [{"type": "chat", "text": "hi"}]
    await connection.disconnect()


@pytest.mark.asyncio
async def test_disconnect_is_idempotent_and_cancels_reconnect():
    never = asyncio.Event()

    async def blocked_sleep(delay):
        await never.wait()

    connection, _, _, _ = make_connection(Script(), sleep=blocked_sleep)
    assert await connection.connect() is False
    assert connection.state is ConnectionState.RECONNECTING

    await connection.disconnect()
    assert connection.state is ConnectionState.DISCONNECTED
    await connection.disconnect()
    await connection.disconnect()
    assert connection.state is ConnectionState.DISCONNECTED
    assert connection.attempts == 1


class SlowOpenTransport(FakeTransport):
    """Holds ``open`` until released."""

    def __init__(self, frames=()):
        super().__init__(frames)
        self.opening = asyncio.Event()
        self.release = asyncio.Event()

    async def open(self, url, headers):
        await super().open(url, headers)
        self.opening.set()
        await self.release.wait()


@pytest.mark.asyncio
async def test_disconnect_during_open_abandons_the_attempt():
    transport = SlowOpenTransport([ESTABLISHED])
    connection, states, _, _ = make_connection(Script(transport))

    pending = asyncio.create_task(connection.connect())
    await transport.opening.wait()
    await connection.disconnect()
    transport.release.set()

    assert await pending is False
    assert connection.state is ConnectionState.DISCONNECTED
    assert transport.closed is True
    assert ConnectionState.AUTHENTICATED not in states


@pytest.mark.asyncio
async def test_disconnect_while_awaiting_verdict_closes_socket():
    transport = FakeTransport()
    connection, states, _, _ = make_connection(Script(transport), auth_timeout=5.0)

    pending = asyncio.create_task(connection.connect())
    await wait_for_state(connection, ConnectionState.CONNECTED)
    await connection.disconnect()

    assert await pending is False
    assert connection.state is ConnectionState.DISCONNECTED
    assert transport.closed is True
    assert ConnectionState.RECONNECTING not in states


@pytest.mark.asyncio
async def test_missing_user_is_rejected_without_retry():
    credentials = FakeCredentials()
    credentials.user_id = None
    script = Script()
    connection, _, failures, _ = make_connection(script, credentials)

    assert await connection.connect() is False
    assert connection.state is ConnectionState.FAILED
    assert failures == [(AuthFailureKind.REJECTED, "MISSING_TOKEN")]
    assert script.opened == []
