import logging
import uuid

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from session_gateway.auth import router as auth_router
from session_gateway.config import settings
from session_gateway.core import exceptions
from session_gateway.database import AsyncSessionLocal, engine
from session_gateway.realtime import router as realtime_router

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# CORS must be added before other middleware
configured_origins = [str(origin).rstrip("/") for origin in settings.BACKEND_CORS_ORIGINS]
default_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:8000",
    "http://127.0.0.1:8000",
]
allow_origins = configured_origins if settings.APP_ENV == "production" else list(dict.fromkeys([*default_origins, *configured_origins]))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

# Exception Handlers
app.add_exception_handler(exceptions.SessionGatewayError, exceptions.session_exception_handler)  # type: ignore
app.add_exception_handler(RequestValidationError, exceptions.validation_exception_handler)  # type: ignore

# Routers
app.include_router(auth_router.router, prefix=f"{settings.API_V1_STR}/auth", tags=["Auth"])
app.include_router(realtime_router.router, tags=["Realtime"])


@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/healthz")
async def healthz():
    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.exception("Health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database unavailable",
        ) from exc
    return {"status": "ok", "database": "ok"}


@app.on_event("startup")
async def startup_checks() -> None:
    _validate_security_settings()
    logger.info("Session gateway started (env=%s, reuse cascade=%s)", settings.APP_ENV, settings.REUSE_CASCADE)


@app.on_event("shutdown")
async def shutdown_engine() -> None:
    await engine.dispose()


def _validate_security_settings() -> None:
    if settings.APP_ENV != "production":
        return

    errors: list[str] = []
    if settings.SECRET_PROVIDER == "env" and len((settings.JWT_SECRET_KEY or "").strip()) < 32:
        errors.append("JWT_SECRET_KEY must be at least 32 characters in production.")
    if settings.SECRET_PROVIDER == "http" and not settings.SECRET_SERVICE_URL:
        errors.append("SECRET_SERVICE_URL must be set when SECRET_PROVIDER=http.")
    if not settings.IDENTITY_API_URL:
        errors.append("IDENTITY_API_URL must be configured in production.")
    if not settings.COOKIE_SECURE:
        errors.append("COOKIE_SECURE must be enabled in production.")
    if not settings.BACKEND_CORS_ORIGINS:
        errors.append("BACKEND_CORS_ORIGINS must be explicitly configured in production.")

    if errors:
        raise RuntimeError("; ".join(errors))
