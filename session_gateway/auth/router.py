import logging
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from session_gateway.auth import dependencies, schemas
from session_gateway.auth.cookies import CookiePolicy
from session_gateway.auth.credentials import CredentialExtractor
from session_gateway.config import settings
from session_gateway.core.exceptions import CredentialError, SessionGatewayError, error_response
from session_gateway.core.rate_limit import rate_limit_dependency
from session_gateway.services.identity_client import IdentityClient
from session_gateway.services.refresh_coordinator import RefreshCoordinator, SessionTokens
from session_gateway.services.revocation_service import RevocationService
from session_gateway.services.token_issuer import TokenIssuer

logger = logging.getLogger(__name__)

router = APIRouter()

Extractor = Annotated[CredentialExtractor, Depends(dependencies.get_credential_extractor)]
Cookies = Annotated[CookiePolicy, Depends(dependencies.get_cookie_policy)]
Issuer = Annotated[TokenIssuer, Depends(dependencies.get_token_issuer)]
Coordinator = Annotated[RefreshCoordinator, Depends(dependencies.get_refresh_coordinator)]
Identity = Annotated[IdentityClient, Depends(dependencies.get_identity_client)]


def _session_response(tokens: SessionTokens, cookies: CookiePolicy) -> JSONResponse:
    body = schemas.SessionResponse(
        user=schemas.UserOut(**tokens.user.public()),
        tokens=schemas.AccessTokenOut(access_token=tokens.access_token, expires_in=tokens.access.expires_in),
    )
    response = JSONResponse(content=body.model_dump())
    cookies.set_session_cookies(response, refresh_token=tokens.refresh_token, user=tokens.user)
    return response


@router.post(
    "/request-otp",
    dependencies=[
        rate_limit_dependency(
            scope="otp-request",
            limit=settings.OTP_REQUEST_LIMIT,
            window_seconds=settings.OTP_REQUEST_WINDOW_SECONDS,
            json_fields=("email",),
        )
    ],
)
async def request_otp(body: schemas.OtpRequest, identity: Identity) -> dict[str, Any]:
    return await identity.request_otp(body.email)


@router.post(
    "/verify-otp",
    response_model=schemas.SessionResponse,
    dependencies=[
        rate_limit_dependency(
            scope="otp-verify",
            limit=settings.OTP_VERIFY_LIMIT,
            window_seconds=settings.OTP_VERIFY_WINDOW_SECONDS,
            json_fields=("email",),
        )
    ],
)
async def verify_otp(
    body: schemas.OtpVerifyRequest,
    request: Request,
    identity: Identity,
    coordinator: Coordinator,
    cookies: Cookies,
):
    profile = await identity.verify_otp(body.email, body.otp)
    tokens = await coordinator.open_session(profile.id, profile.email, dependencies.device_info(request))
    return _session_response(tokens, cookies)


@router.post(
    "/refresh",
    response_model=schemas.SessionResponse,
    dependencies=[
        rate_limit_dependency(
            scope="refresh",
            limit=settings.REFRESH_LIMIT,
            window_seconds=settings.REFRESH_WINDOW_SECONDS,
        )
    ],
)
async def refresh(request: Request, extractor: Extractor, coordinator: Coordinator, cookies: Cookies):
    credential = extractor.extract(request.headers, request.cookies)
    try:
        tokens = await coordinator.rotate(
            credential.value if credential else None,
            device_info=dependencies.device_info(request),
        )
    except CredentialError as exc:
        logger.info("Refresh rejected: %s", exc.code)
        response = error_response(request, exc)
        cookies.clear(response)
        return response
    return _session_response(tokens, cookies)


async def _known_user_id(issuer: TokenIssuer, candidates: list[str]) -> str | None:
    for token in candidates:
        for decode in (issuer.decode_access_token, issuer.decode_refresh_token):
            try:
                return (await decode(token)).user_id
            except SessionGatewayError:
                continue
    return None


async def _logout_options(request: Request) -> schemas.LogoutRequest:
    # logout never fails on its body; anything unreadable means a plain logout
    raw = await request.body()
    if not raw:
        return schemas.LogoutRequest()
    try:
        return schemas.LogoutRequest.model_validate_json(raw, strict=True)
    except ValidationError:
        logger.info("Ignoring unreadable logout body")
        return schemas.LogoutRequest()


@router.post("/logout", response_model=schemas.LogoutResponse)
async def logout(
    request: Request,
    background_tasks: BackgroundTasks,
    extractor: Extractor,
    issuer: Issuer,
    cookies: Cookies,
    revocation: Annotated[RevocationService, Depends(dependencies.get_revocation_service)],
):
    response = JSONResponse(content=schemas.LogoutResponse().model_dump())
    cookies.clear(response)

    options = await _logout_options(request)
    candidates = extractor.candidates(request.headers, request.cookies)
    user_id = None
    if options.everywhere:
        user_id = await _known_user_id(issuer, candidates)
    if candidates or user_id:
        background_tasks.add_task(revocation.logout, candidates, user_id)
    return response


@router.post("/validate-session", response_model=schemas.SessionValidation)
async def validate_session(request: Request, extractor: Extractor, issuer: Issuer, identity: Identity):
    token = extractor.bearer(request.headers)
    if token is None:
        user_info = extractor.user_info(request.headers, request.cookies)
        if user_info is None:
            return schemas.SessionValidation(valid=False, reason="MISSING_TOKEN")
        # readable cookie only: fine for UI hints, never proof for privileged calls
        return schemas.SessionValidation(valid=True, verified=False, method="user_info_cookie", user_info=user_info)

    try:
        claims = await issuer.decode_access_token(token)
    except SessionGatewayError as exc:
        return schemas.SessionValidation(valid=False, reason=exc.code, method="bearer")

    upstream = None
    if settings.IDENTITY_VALIDATE_UPSTREAM:
        try:
            upstream = await identity.validate_session(
                request.headers["authorization"], request.headers.get("cookie")
            )
        except SessionGatewayError as exc:
            return schemas.SessionValidation(valid=False, reason=exc.code, method="bearer")
        if not upstream.get("valid", False):
            return schemas.SessionValidation(
                valid=False, reason=str(upstream.get("reason") or "UPSTREAM_REJECTED"), method="bearer"
            )

    return schemas.SessionValidation(
        valid=True,
        verified=True,
        method="bearer",
        user_info=schemas.UserOut(**claims.user.public()),
        expires_at=claims.exp,
        upstream=upstream,
    )


@router.post("/ws-token", response_model=schemas.WebSocketTicket)
async def websocket_token(
    claims: Annotated[schemas.TokenClaims, Depends(dependencies.require_access_claims)],
    issuer: Issuer,
):
    ticket = await issuer.issue_ws_ticket(claims.user)
    return schemas.WebSocketTicket(token=ticket.value, expires_in=ticket.expires_in, user_id=claims.user_id)
