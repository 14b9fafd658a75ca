"""Message types and close codes shared by the realtime endpoint and its client."""

# server -> client
CONNECTION_ESTABLISHED = "connection_established"
AUTH_FAILED = "auth_failed"
SESSION_EXPIRING = "session_expiring"
REAUTHENTICATED = "reauthenticated"
PONG = "pong"
HEARTBEAT_ACK = "heartbeat_ack"
MESSAGE_QUEUED = "message_queued"
ERROR = "error"

# client -> server
PING = "ping"
HEARTBEAT = "heartbeat"
REAUTHENTICATE = "reauthenticate"
MESSAGE = "message"

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011
CLOSE_SESSION_EXPIRED = 4401
CLOSE_AUTH_REJECTED = 4403

CLEAN_CLOSE_CODES = frozenset({CLOSE_NORMAL, CLOSE_GOING_AWAY})
AUTH_CLOSE_CODES = frozenset({CLOSE_SESSION_EXPIRED, CLOSE_AUTH_REJECTED, CLOSE_POLICY_VIOLATION})

RECOVERABLE_AUTH_CODES = frozenset({"TOKEN_EXPIRED", "REFRESH_TOKEN_EXPIRED", "SESSION_EXPIRED"})
