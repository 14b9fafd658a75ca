"""Locating a presented credential among the places a client may put it."""
import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal
from urllib.parse import unquote

from starlette.requests import cookie_parser

from session_gateway.auth.schemas import UserOut

REFRESH_COOKIE = "refresh_token"
AUTHENTICATED_COOKIE = "authenticated"
USER_INFO_COOKIE = "user_info"


@dataclass(frozen=True)
class PresentedCredential:
    value: str
    source: Literal["bearer", "cookie"]


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.title())
    return value


class CredentialExtractor:
    """Bearer header first, then a parsed cookie jar, then the raw Cookie header.

    The raw header is parsed with the same parser Starlette uses for
    ``request.cookies`` so every path agrees on cookie semantics.
    """

    def __init__(self, cookie_name: str = REFRESH_COOKIE):
        self.cookie_name = cookie_name

    @staticmethod
    def bearer(headers: Mapping[str, str]) -> str | None:
        authorization = _header(headers, "authorization")
        if not authorization:
            return None
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    @staticmethod
    def cookies(headers: Mapping[str, str], cookies: Mapping[str, str] | None = None) -> Mapping[str, str]:
        if cookies:
            return cookies
        raw = _header(headers, "cookie")
        return cookie_parser(raw) if raw else {}

    def cookie(self, headers: Mapping[str, str], cookies: Mapping[str, str] | None = None) -> str | None:
        value = self.cookies(headers, cookies).get(self.cookie_name)
        return value or None

    def extract(self, headers: Mapping[str, str], cookies: Mapping[str, str] | None = None) -> PresentedCredential | None:
        token = self.bearer(headers)
        if token:
            return PresentedCredential(value=token, source="bearer")
        token = self.cookie(headers, cookies)
        if token:
            return PresentedCredential(value=token, source="cookie")
        return None

    def candidates(self, headers: Mapping[str, str], cookies: Mapping[str, str] | None = None) -> list[str]:
        values = [self.bearer(headers), self.cookie(headers, cookies)]
        return list(dict.fromkeys(value for value in values if value))

    def user_info(self, headers: Mapping[str, str], cookies: Mapping[str, str] | None = None) -> UserOut | None:
        raw = self.cookies(headers, cookies).get(USER_INFO_COOKIE)
        if not raw:
            return None
        try:
            data = json.loads(unquote(raw))
            return UserOut.model_validate(data)
        except ValueError:
            return None
