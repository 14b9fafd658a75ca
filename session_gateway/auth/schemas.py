from dataclasses import dataclass
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field

TokenType = Literal["user_access", "user_refresh", "ws_ticket"]


@dataclass(frozen=True)
class SessionUser:
    user_id: str
    email: str
    session_id: str

    def public(self) -> dict[str, str]:
        return {"id": self.user_id, "email": self.email, "session_id": self.session_id}


class TokenClaims(BaseModel):
    """Decoded payload of every token this service signs. Unknown or missing claims are rejected."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    iss: str
    aud: str
    iat: int
    exp: int
    jti: str
    user_id: str = Field(min_length=1)
    email: str
    session_id: str = Field(min_length=1)
    token_type: TokenType

    @property
    def user(self) -> SessionUser:
        return SessionUser(user_id=self.user_id, email=self.email, session_id=self.session_id)


class OtpRequest(BaseModel):
    email: EmailStr


class OtpVerifyRequest(BaseModel):
    email: EmailStr
    otp: str = Field(min_length=1, max_length=32)


class LogoutRequest(BaseModel):
    everywhere: bool = False


class UserOut(BaseModel):
    id: str
    email: str
    session_id: str


class AccessTokenOut(BaseModel):
    access_token: str
    expires_in: int
    token_type: str = "Bearer"


class SessionResponse(BaseModel):
    user: UserOut
    tokens: AccessTokenOut


class LogoutResponse(BaseModel):
    success: bool = True
    message: str = "Logout successful"


class SessionValidation(BaseModel):
    valid: bool
    verified: bool = False
    method: Optional[str] = None
    reason: Optional[str] = None
    user_info: Optional[UserOut] = None
    expires_at: Optional[int] = None
    upstream: Optional[dict[str, Any]] = None


class WebSocketTicket(BaseModel):
    success: bool = True
    token: str
    expires_in: int
    user_id: str
