"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register   -- create account; 201 {user, accessToken} + refresh cookie
  POST /api/v1/auth/login      -- password login; 200 {user, accessToken} + refresh cookie
  POST /api/v1/auth/refresh    -- rotate refresh cookie; 200 {accessToken}
  POST /api/v1/auth/logout     -- revoke refresh cookie's session; 204, always
  GET  /api/v1/auth/me         -- current user (bearer required)
  GET  /api/v1/auth/status     -- anonymous-or-authenticated check (bearer optional)

Security:
  [H2] register and login are rate-limited per source address (LOGIN_RATE_LIMIT,
       default 5/minute). 429 is distinct from the 401 for bad credentials.
  [C2] Every auth failure raises AuthenticationError and renders one fixed 401
       body. Failed logins are logged here with address and user agent.
  [M5] Cache-Control: no-store on every response that carries a token.
  The refresh token is only ever in the cookie, never in a body.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AuthResponse,
    AuthStatusResponse,
    LoginRequest,
    MeResponse,
    RefreshResponse,
    RegisterRequest,
    UserOut,
)
from auth.dependencies import client_address, get_auth_service, get_cookie_policy, optional_user_id, require_user_id
from auth.errors import AuthenticationError, AuthError
from auth.models import AuthResult
from auth.service import AuthService
from auth.transport import CookiePolicy, clear_refresh_cookie, read_refresh_cookie, set_refresh_cookie

logger = logging.getLogger("mandarin.api.auth")

# Auth policy:
# - POST /api/v1/auth/register: public, rate-limited
# - POST /api/v1/auth/login:    public, rate-limited
# - POST /api/v1/auth/refresh:  refresh cookie required
# - POST /api/v1/auth/logout:   public -- idempotent, clears the cookie regardless
# - GET  /api/v1/auth/me:       bearer access token required (require_user_id)
# - GET  /api/v1/auth/status:   bearer optional (optional_user_id)
router = APIRouter()


def _no_store(resp: Response) -> Response:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _session_response(result: AuthResult, status_code: int, policy: CookiePolicy, expires_in: int) -> JSONResponse:
    body = AuthResponse(
        user=UserOut.from_profile(result.user),
        access_token=result.tokens.access_token,
        expires_in=expires_in,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(by_alias=True))
    set_refresh_cookie(resp, policy, result.tokens.refresh_token)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Credential endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and start its first session."""
    service: AuthService = get_auth_service(request)
    try:
        result = service.register(body.email, body.password, body.display_name)
    except AuthError as exc:
        logger.warning(
            "Registration failed code=%s ip=%s user_agent=%s",
            exc.code,
            client_address(request),
            request.headers.get("user-agent", ""),
        )
        raise
    logger.info("Registration succeeded user_id=%s ip=%s", result.user.id, client_address(request))
    return _session_response(result, 201, get_cookie_policy(request), service.access_token_ttl)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the refresh cookie.

    Unknown email, soft-deleted account and wrong password all produce the
    same 401 body [C2]. The distinction is in the log line only.
    """
    service: AuthService = get_auth_service(request)
    try:
        result = service.login(body.email, body.password)
    except AuthenticationError as exc:
        logger.warning(
            "Login failed reason=%s email=%s ip=%s user_agent=%s",
            exc.reason,
            body.email,
            client_address(request),
            request.headers.get("user-agent", ""),
        )
        raise
    logger.info("Login succeeded user_id=%s ip=%s", result.user.id, client_address(request))
    return _session_response(result, 200, get_cookie_policy(request), service.access_token_ttl)


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and a rotated cookie."""
    service: AuthService = get_auth_service(request)
    policy = get_cookie_policy(request)
    try:
        pair = service.refresh(read_refresh_cookie(request, policy))
    except AuthenticationError as exc:
        logger.info("Refresh rejected reason=%s ip=%s", exc.reason, client_address(request))
        raise
    body = RefreshResponse(access_token=pair.access_token, expires_in=service.access_token_ttl)
    resp = JSONResponse(status_code=200, content=body.model_dump(by_alias=True))
    set_refresh_cookie(resp, policy, pair.refresh_token)
    return _no_store(resp)


@router.post("/auth/logout", status_code=204)
def logout(request: Request) -> Response:
    """Revoke the cookie's session and clear the cookie. Always 204."""
    service: AuthService = get_auth_service(request)
    policy = get_cookie_policy(request)
    service.logout(read_refresh_cookie(request, policy))
    resp = Response(status_code=204)
    clear_refresh_cookie(resp, policy)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Identity endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, user_id: str = Depends(require_user_id)) -> JSONResponse:
    """Return the sanitized profile of the bearer token's owner."""
    profile = get_auth_service(request).get_user(user_id)
    return _no_store(JSONResponse(content=MeResponse(user=UserOut.from_profile(profile)).model_dump(by_alias=True)))


@router.get("/auth/status", response_model=AuthStatusResponse)
def status(user_id: str | None = Depends(optional_user_id)) -> JSONResponse:
    """Tell the caller whether its bearer token (if any) identifies a user."""
    body = AuthStatusResponse(authenticated=user_id is not None, user_id=user_id)
    return JSONResponse(content=body.model_dump(by_alias=True))
