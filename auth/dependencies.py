"""
auth/dependencies.py -- FastAPI Depends() helpers: request-time auth enforcement.

Two enforcement modes:
  require_user_id()  -- protected routes. No bearer token, or a bad one, is 401.
  optional_user_id() -- public-but-personalizable routes. No bearer token means
                        anonymous (None). A token that is present but fails
                        verification is still 401: a client that believes it
                        is signed in should learn that it is not.

On success the subject user id is also stored on request.state.user_id so
handlers and middleware further down can read it without re-verifying.

Failures all surface as AuthenticationError, which renders one fixed 401 body.
Whether the token was expired, malformed or signed with the wrong key is
logged here with the source address and never returned.

Layer rule: no imports from client/. May import from fastapi/starlette.
"""

from __future__ import annotations

import logging

from fastapi import Request

from auth.errors import AuthenticationError
from auth.service import AuthService
from auth.transport import CookiePolicy, read_bearer_token

logger = logging.getLogger("mandarin.auth")


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_cookie_policy(request: Request) -> CookiePolicy:
    return request.app.state.cookie_policy


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _verify(request: Request, token: str | None) -> str:
    service = get_auth_service(request)
    try:
        user_id = service.authenticate_access(token)
    except AuthenticationError as exc:
        logger.info(
            "Access token rejected reason=%s path=%s ip=%s",
            exc.reason,
            request.url.path,
            client_address(request),
        )
        raise
    request.state.user_id = user_id
    return user_id


def require_user_id(request: Request) -> str:
    """Require a valid bearer access token. Raises AuthenticationError (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user_id: str = Depends(require_user_id)): ...
    """
    return _verify(request, read_bearer_token(request))


def optional_user_id(request: Request) -> str | None:
    """Return the caller's user id, or None for an anonymous request."""
    token = read_bearer_token(request)
    if token is None:
        request.state.user_id = None
        return None
    return _verify(request, token)
