import asyncio
import json
import logging
import time
import uuid
from collections.abc import Mapping
from typing import Annotated

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from session_gateway.auth import dependencies
from session_gateway.auth.credentials import CredentialExtractor
from session_gateway.auth.schemas import TokenClaims
from session_gateway.config import settings
from session_gateway.core.exceptions import (
    CredentialError,
    MalformedToken,
    MissingCredential,
    RevokedOrReused,
    SessionGatewayError,
)
from session_gateway.realtime import protocol
from session_gateway.realtime.manager import connection_registry
from session_gateway.services.token_issuer import TokenIssuer
from session_gateway.services.token_store import TokenStore

logger = logging.getLogger(__name__)

router = APIRouter()


async def _decode_presented_token(issuer: TokenIssuer, token: str) -> TokenClaims:
    try:
        return await issuer.decode_ws_ticket(token)
    except MalformedToken:
        return await issuer.decode_access_token(token)


async def authenticate_socket(
    query_token: str | None,
    headers: Mapping[str, str],
    cookies: Mapping[str, str] | None,
    *,
    issuer: TokenIssuer,
    store: TokenStore,
    extractor: CredentialExtractor,
) -> TokenClaims:
    """Resolve the credential of a socket: query ticket, then bearer, then refresh cookie."""
    if query_token:
        return await _decode_presented_token(issuer, query_token)

    bearer = extractor.bearer(headers)
    if bearer:
        return await issuer.decode_access_token(bearer)

    refresh_token = extractor.cookie(headers, cookies)
    if refresh_token:
        claims = await issuer.decode_refresh_token(refresh_token)
        # checked, not rotated: the HTTP refresh path owns rotation
        if await store.find_active(refresh_token, claims.user_id) is None:
            raise RevokedOrReused()
        return claims

    raise MissingCredential()


def _auth_failed_close_code(code: str) -> int:
    if code in protocol.RECOVERABLE_AUTH_CODES:
        return protocol.CLOSE_SESSION_EXPIRED
    return protocol.CLOSE_AUTH_REJECTED


async def _reject(websocket: WebSocket, code: str, detail: str) -> None:
    close_code = _auth_failed_close_code(code)
    await websocket.send_json(
        {
            "type": protocol.AUTH_FAILED,
            "code": code,
            "detail": detail,
            "recoverable": close_code == protocol.CLOSE_SESSION_EXPIRED,
        }
    )
    await websocket.close(code=close_code)


@router.websocket("/ws/{user_id}")
async def realtime_websocket(
    websocket: WebSocket,
    user_id: str,
    issuer: Annotated[TokenIssuer, Depends(dependencies.get_token_issuer)],
    store: Annotated[TokenStore, Depends(dependencies.get_token_store)],
    extractor: Annotated[CredentialExtractor, Depends(dependencies.get_credential_extractor)],
):
    await websocket.accept()

    try:
        claims = await authenticate_socket(
            websocket.query_params.get("token"),
            websocket.headers,
            websocket.cookies,
            issuer=issuer,
            store=store,
            extractor=extractor,
        )
    except CredentialError as exc:
        logger.info("Realtime handshake rejected for user %s: %s", user_id, exc.code)
        await _reject(websocket, exc.code, exc.detail)
        return
    except SessionGatewayError as exc:
        logger.warning("Realtime handshake failed for user %s: %s", user_id, exc.code)
        await websocket.send_json({"type": protocol.ERROR, "code": exc.code, "detail": exc.detail})
        await websocket.close(code=protocol.CLOSE_INTERNAL_ERROR)
        return

    if claims.user_id != user_id:
        logger.warning("Realtime handshake for user %s presented credential of %s", user_id, claims.user_id)
        await _reject(websocket, "USER_MISMATCH", "Credential does not belong to this user")
        return

    connection_id = uuid.uuid4().hex
    connection_registry.register(websocket, user_id)
    await websocket.send_json(
        {
            "type": protocol.CONNECTION_ESTABLISHED,
            "connection_id": connection_id,
            "user_id": user_id,
            "session_id": claims.session_id,
            "expires_at": claims.exp,
        }
    )
    logger.info("Realtime connection %s established for user %s", connection_id, user_id)

    expires_at = claims.exp
    warned = False
    try:
        while True:
            remaining = expires_at - time.time()
            if remaining <= 0:
                await _reject(websocket, "SESSION_EXPIRED", "Session expired")
                break

            until_warning = remaining - settings.WS_EXPIRY_WARNING_SECONDS
            if not warned and until_warning <= 0:
                await websocket.send_json(
                    {"type": protocol.SESSION_EXPIRING, "expires_at": expires_at, "expires_in": int(remaining)}
                )
                warned = True
                continue

            try:
                raw = await asyncio.wait_for(
                    websocket.receive_text(),
                    timeout=remaining if warned else until_warning,
                )
            except asyncio.TimeoutError:
                continue

            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": protocol.ERROR, "code": "INVALID_JSON"})
                continue
            if not isinstance(data, dict):
                await websocket.send_json({"type": protocol.ERROR, "code": "INVALID_MESSAGE"})
                continue

            message_type = data.get("type")
            if message_type == protocol.PING:
                await websocket.send_json({"type": protocol.PONG, "timestamp": int(time.time())})
            elif message_type == protocol.HEARTBEAT:
                await websocket.send_json({"type": protocol.HEARTBEAT_ACK, "timestamp": int(time.time())})
            elif message_type == protocol.REAUTHENTICATE:
                try:
                    renewed = await _decode_presented_token(issuer, str(data.get("token") or ""))
                except SessionGatewayError as exc:
                    await websocket.send_json({"type": protocol.ERROR, "code": exc.code, "detail": exc.detail})
                    continue
                if renewed.user_id != user_id:
                    await websocket.send_json({"type": protocol.ERROR, "code": "USER_MISMATCH"})
                    continue
                expires_at = renewed.exp
                warned = False
                await websocket.send_json({"type": protocol.REAUTHENTICATED, "expires_at": expires_at})
            elif message_type == protocol.MESSAGE:
                await websocket.send_json(
                    {"type": protocol.MESSAGE_QUEUED, "id": data.get("id"), "timestamp": int(time.time())}
                )
            else:
                await websocket.send_json({"type": protocol.ERROR, "code": "UNSUPPORTED_MESSAGE"})
    except WebSocketDisconnect:
        logger.info("Realtime connection %s closed by user %s", connection_id, user_id)
    finally:
        connection_registry.disconnect(websocket, user_id)
