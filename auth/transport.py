"""
auth/transport.py -- How tokens travel over HTTP.

Refresh token: HTTP-only cookie, never visible to page scripts.
    Secure in production, SameSite=Strict in production and Lax in
    development (the dev server proxies from another port), Path=/,
    Max-Age equal to the refresh TTL.

Access token: response body on the way out, Authorization: Bearer on the way
    in. Never a cookie, so the browser never attaches it automatically.

Cookie symmetry: a browser only removes a cookie when the clearing
    Set-Cookie carries the same path, domain, secure, httponly and samesite
    as the one that created it. set_refresh_cookie() and clear_refresh_cookie()
    therefore both take their attributes from CookiePolicy.attributes(); do
    not pass attributes to either call by hand.

Layer rule: may import from starlette (Request/Response types) and core/.
"""

from __future__ import annotations

from dataclasses import dataclass

from starlette.requests import Request
from starlette.responses import Response

from core.config import Settings


@dataclass(frozen=True)
class CookiePolicy:
    name: str
    max_age: int
    secure: bool
    samesite: str  # "strict" | "lax"
    path: str = "/"
    domain: str | None = None
    httponly: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> CookiePolicy:
        return cls(
            name=settings.refresh_cookie_name,
            max_age=settings.refresh_token_ttl_seconds,
            secure=settings.cookie_secure,
            samesite=settings.cookie_samesite,
            domain=settings.cookie_domain,
        )

    def attributes(self) -> dict:
        """The attribute set shared by set and clear. Max-Age is the only difference."""
        return {
            "path": self.path,
            "domain": self.domain,
            "secure": self.secure,
            "httponly": self.httponly,
            "samesite": self.samesite,
        }


def set_refresh_cookie(response: Response, policy: CookiePolicy, refresh_token: str) -> None:
    response.set_cookie(policy.name, value=refresh_token, max_age=policy.max_age, **policy.attributes())


def clear_refresh_cookie(response: Response, policy: CookiePolicy) -> None:
    response.delete_cookie(policy.name, **policy.attributes())


def read_refresh_cookie(request: Request, policy: CookiePolicy) -> str | None:
    return request.cookies.get(policy.name) or None


def read_bearer_token(request: Request) -> str | None:
    """Return the token from 'Authorization: Bearer <token>', or None if absent or another scheme."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None
