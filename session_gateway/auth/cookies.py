import json
from dataclasses import dataclass
from typing import Literal
from urllib.parse import quote

from starlette.responses import Response

from session_gateway.auth.credentials import AUTHENTICATED_COOKIE, REFRESH_COOKIE, USER_INFO_COOKIE
from session_gateway.auth.schemas import SessionUser
from session_gateway.config import Settings

# Everything a previous deployment may have left behind is cleared too.
AUTH_COOKIE_NAMES = (REFRESH_COOKIE, AUTHENTICATED_COOKIE, USER_INFO_COOKIE, "access_token", "session_id")


@dataclass(frozen=True)
class CookiePolicy:
    secure: bool
    samesite: Literal["lax", "strict", "none"]
    domain: str | None
    path: str
    refresh_max_age: int
    access_max_age: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "CookiePolicy":
        return cls(
            secure=settings.COOKIE_SECURE,
            samesite=settings.COOKIE_SAMESITE,
            domain=settings.COOKIE_DOMAIN,
            path=settings.COOKIE_PATH,
            refresh_max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
            access_max_age=settings.ACCESS_TOKEN_EXPIRE_SECONDS,
        )

    def _set(self, response: Response, key: str, value: str, *, max_age: int, httponly: bool) -> None:
        response.set_cookie(
            key,
            value,
            max_age=max_age,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=httponly,
            samesite=self.samesite,
        )

    def set_session_cookies(self, response: Response, *, refresh_token: str, user: SessionUser) -> None:
        self._set(response, REFRESH_COOKIE, refresh_token, max_age=self.refresh_max_age, httponly=True)
        self._set(response, AUTHENTICATED_COOKIE, "true", max_age=self.access_max_age, httponly=False)
        self._set(
            response,
            USER_INFO_COOKIE,
            quote(json.dumps(user.public(), separators=(",", ":"))),
            max_age=self.access_max_age,
            httponly=False,
        )

    def clear(self, response: Response) -> None:
        for name in AUTH_COOKIE_NAMES:
            response.delete_cookie(
                name,
                path=self.path,
                domain=self.domain,
                secure=self.secure,
                httponly=name == REFRESH_COOKIE,
                samesite=self.samesite,
            )
