from __future__ import annotations

import hmac
import secrets
from typing import Iterable, Optional

from fastapi import Response

from authcore.service.errors import CsrfError

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class CsrfGuard:
    """Double-submit cookie protection.

    The token lives in a JS-readable cookie; mutating requests must echo it in
    a header. Tokens are reused for as long as the cookie exists.
    """

    def __init__(
        self,
        *,
        cookie_name: str = "csrf_token",
        header_name: str = "X-CSRF-Token",
        max_age_seconds: int = 60 * 60 * 24,
        secure: bool = True,
        exempt_paths: Iterable[str] = (),
    ) -> None:
        self.cookie_name = cookie_name
        self.header_name = header_name
        self.max_age_seconds = max_age_seconds
        self.secure = secure
        self.exempt_paths = frozenset(exempt_paths)

    @staticmethod
    def _mint() -> str:
        return secrets.token_urlsafe(32)

    def issue(self, existing_cookie_value: Optional[str] = None) -> str:
        if existing_cookie_value:
            return existing_cookie_value
        return self._mint()

    def validate(self, cookie_value: Optional[str], header_value: Optional[str]) -> None:
        if not cookie_value or not header_value:
            raise CsrfError("CSRF token missing")
        if not hmac.compare_digest(cookie_value.encode(), header_value.encode()):
            raise CsrfError("CSRF token mismatch")

    def requires_check(self, method: str, path: str) -> bool:
        if method.upper() in SAFE_METHODS:
            return False
        return path not in self.exempt_paths

    def set_cookie(self, response: Response, token: str) -> None:
        response.set_cookie(
            key=self.cookie_name,
            value=token,
            max_age=self.max_age_seconds,
            httponly=False,
            secure=self.secure,
            samesite="strict",
            path="/",
        )
