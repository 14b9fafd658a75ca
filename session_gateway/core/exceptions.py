from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError


class SessionGatewayError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"
    detail = "Internal server error"

    def __init__(self, detail: str | None = None, *, code: str | None = None):
        self.detail = detail or self.detail
        self.code = code or self.code
        super().__init__(self.detail)

    def headers(self) -> dict[str, str] | None:
        return None


class CredentialError(SessionGatewayError):
    """The presented credential cannot be used. Never retried by the server."""

    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"
    detail = "Could not validate credentials"

    def headers(self) -> dict[str, str] | None:
        return {"WWW-Authenticate": "Bearer"}


class MissingCredential(CredentialError):
    code = "MISSING_TOKEN"
    detail = "Authorization token required"


class MalformedToken(CredentialError):
    code = "INVALID_TOKEN"
    detail = "Invalid token"


class ExpiredToken(CredentialError):
    code = "TOKEN_EXPIRED"
    detail = "Token expired"


class RevokedOrReused(CredentialError):
    code = "TOKEN_REVOKED"
    detail = "Refresh token revoked"


class ReauthenticationRequired(CredentialError):
    """The old refresh token was retired but its replacement could not be issued."""

    code = "SESSION_LOST"
    detail = "Session could not be renewed, please sign in again"


class ServiceUnavailable(SessionGatewayError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "SERVICE_UNAVAILABLE"
    detail = "Service temporarily unavailable"
    retry_after_seconds = 5

    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.retry_after_seconds)}


class StoreUnavailable(ServiceUnavailable):
    code = "STORE_UNAVAILABLE"
    detail = "Token store temporarily unavailable"


class SecretUnavailable(ServiceUnavailable):
    code = "SECRET_UNAVAILABLE"
    detail = "Signing key temporarily unavailable"


class RateLimited(SessionGatewayError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"
    detail = "Too many requests"

    def __init__(self, retry_after_seconds: int, detail: str | None = None):
        super().__init__(detail or f"Too many requests. Retry in {retry_after_seconds} seconds.")
        self.retry_after_seconds = retry_after_seconds

    def headers(self) -> dict[str, str] | None:
        return {"Retry-After": str(self.retry_after_seconds)}


class UpstreamIdentityFailure(SessionGatewayError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "UPSTREAM_IDENTITY_FAILURE"
    detail = "Identity service request failed"

    def __init__(self, detail: str | None = None, *, code: str | None = None, status_code: int | None = None):
        super().__init__(detail, code=code)
        if status_code is not None:
            self.status_code = status_code


def error_content(request: Request, exc: SessionGatewayError) -> dict:
    return {
        "detail": exc.detail,
        "code": exc.code,
        "request_id": getattr(request.state, "request_id", None),
    }


def error_response(request: Request, exc: SessionGatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_content(request, exc),
        headers=exc.headers(),
    )


async def session_exception_handler(request: Request, exc: SessionGatewayError):
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "detail": jsonable_encoder(exc.errors()),
            "code": "VALIDATION_ERROR",
            "message": "Validation Error",
            "request_id": request_id,
        },
    )
