import logging

from fastapi import WebSocket

from session_gateway.realtime.protocol import AUTH_FAILED, CLOSE_AUTH_REJECTED

logger = logging.getLogger(__name__)


class WebSocketManager:
    def __init__(self) -> None:
        self.connections_by_user: dict[str, set[WebSocket]] = {}

    def register(self, websocket: WebSocket, user_id: str) -> None:
        self.connections_by_user.setdefault(user_id, set()).add(websocket)

    def disconnect(self, websocket: WebSocket, user_id: str) -> None:
        sockets = self.connections_by_user.get(user_id)
        if sockets:
            sockets.discard(websocket)
            if len(sockets) == 0:
                self.connections_by_user.pop(user_id, None)

    def count(self, user_id: str) -> int:
        return len(self.connections_by_user.get(user_id, ()))

    async def close_user(self, user_id: str) -> None:
        """Drop every live connection of a user whose tokens were all revoked."""
        sockets = list(self.connections_by_user.get(user_id, set()))
        for socket in sockets:
            try:
                await socket.send_json({"type": AUTH_FAILED, "code": "TOKEN_REVOKED", "recoverable": False})
                await socket.close(code=CLOSE_AUTH_REJECTED)
            except Exception:
                logger.debug("Socket for user %s already gone", user_id)
            self.disconnect(socket, user_id)
        if sockets:
            logger.info("Closed %s realtime connection(s) for user %s", len(sockets), user_id)


connection_registry = WebSocketManager()
