from typing import List, Literal, cast
from pydantic import AnyHttpUrl, PostgresDsn, computed_field
from pydantic_core import MultiHostUrl
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Application
    PROJECT_NAME: str = "Session Gateway"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"
    APP_ENV: str = "development"

    # Secrets
    SECRET_PROVIDER: Literal["env", "http"] = "env"
    SECRET_SERVICE_URL: str | None = None
    SECRET_SERVICE_TOKEN: str | None = None
    SECRET_SERVICE_TIMEOUT_SECONDS: float = 5.0
    SECRET_CACHE_TTL_SECONDS: int = 300
    SIGNING_KEY_SECRET_NAME: str = "JWT_SECRET_KEY"
    API_KEY_SECRET_NAME: str = "api-key"
    # Only read by the "env" secret provider
    JWT_SECRET_KEY: str | None = None
    UPSTREAM_API_KEY: str | None = None

    # Tokens
    TOKEN_ISSUER: str = "session-gateway"
    ACCESS_TOKEN_AUDIENCE: str = "session-api"
    REFRESH_TOKEN_AUDIENCE: str = "session-refresh"
    WS_TICKET_AUDIENCE: str = "session-realtime"
    ACCESS_TOKEN_EXPIRE_SECONDS: int = 900
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    WS_TICKET_EXPIRE_SECONDS: int = 300
    REUSE_CASCADE: Literal["session", "user", "none"] = "session"

    # Cookies
    COOKIE_SECURE: bool = True
    COOKIE_SAMESITE: Literal["lax", "strict", "none"] = "lax"
    COOKIE_DOMAIN: str | None = None
    COOKIE_PATH: str = "/"

    # Upstream identity API
    IDENTITY_API_URL: str = "http://localhost:8080"
    IDENTITY_TIMEOUT_SECONDS: float = 10.0
    IDENTITY_VALIDATE_UPSTREAM: bool = False

    # Rate limits
    OTP_REQUEST_LIMIT: int = 5
    OTP_REQUEST_WINDOW_SECONDS: int = 600
    OTP_VERIFY_LIMIT: int = 10
    OTP_VERIFY_WINDOW_SECONDS: int = 600
    REFRESH_LIMIT: int = 30
    REFRESH_WINDOW_SECONDS: int = 60

    # Realtime
    WS_EXPIRY_WARNING_SECONDS: int = 60

    # Validation
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = []

    # Database
    DATABASE_URL: str | None = None
    STORE_TIMEOUT_SECONDS: float = 5.0
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "sessions"

    @computed_field
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(cast(PostgresDsn, MultiHostUrl.build(
            scheme="postgresql+asyncpg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_HOST,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )))

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

settings = Settings()  # type: ignore
