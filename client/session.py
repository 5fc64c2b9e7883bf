"""
client/session.py -- Client-side session manager for the auth API.

Holds the access token in memory and keeps it fresh:
  - Before each request, if the token's exp is within refresh_buffer_seconds,
    refresh first.
  - On a 401, refresh once and retry once. A second 401 raises SessionExpired
    instead of looping.
  - A background thread refreshes every refresh_interval_seconds so an idle
    session does not lapse.
  - restore() re-establishes identity after a restart: refresh from the cookie
    if no access token is held, then GET /auth/me.

The refresh token is never read or stored here. It lives in the requests
cookie jar exactly as a browser would hold it, and only the server's
Set-Cookie headers change it.

Concurrent refresh() and restore() calls are de-duplicated: the first caller
performs the HTTP call, later callers wait on the same Future and get the same
result. Initialization code that runs twice at startup therefore sends one
refresh, not two competing ones.

Usage:
    client = SessionClient("http://localhost:8000/api/v1")
    client.login("alice@example.com", "Passw0rd1")
    client.start_background_refresh()
    resp = client.request("GET", "/auth/me")
    client.logout()
    client.close()
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any, Optional

import requests
from jose import JWTError, jwt

logger = logging.getLogger("mandarin.client")


class AuthClientError(Exception):
    """The server answered with an error envelope."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message

    @classmethod
    def from_response(cls, resp: requests.Response) -> "AuthClientError":
        try:
            error = resp.json().get("error", {})
        except ValueError:
            error = {}
        return cls(resp.status_code, error.get("code", f"http_{resp.status_code}"), error.get("message", ""))


class SessionExpired(AuthClientError):
    """Refresh failed; the user has to sign in again."""

    def __init__(self, message: str = "Session expired. Please sign in again.") -> None:
        super().__init__(401, "unauthorized", message)


class _SingleFlight:
    """Collapse concurrent calls with the same key into one execution."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[str, Future] = {}

    def run(self, key: str, fn: Callable[[], Any]) -> Any:
        with self._lock:
            future = self._calls.get(key)
            leader = future is None
            if leader:
                future = Future()
                self._calls[key] = future
        if not leader:
            return future.result()

        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._calls.pop(key, None)


class SessionClient:
    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        refresh_buffer_seconds: int = 60,
        refresh_interval_seconds: int = 240,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.refresh_buffer_seconds = refresh_buffer_seconds
        self.refresh_interval_seconds = refresh_interval_seconds
        self.timeout = timeout
        self._http = session or requests.Session()
        self._clock = clock
        self._access_token: Optional[str] = None
        self._user: Optional[dict] = None
        self._flights = _SingleFlight()
        self._stop = threading.Event()
        self._refresher: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def user(self) -> Optional[dict]:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._access_token is not None

    def token_expires_at(self) -> float:
        """exp of the held access token, read without verification (the server verifies)."""
        if not self._access_token:
            return 0.0
        try:
            return float(jwt.get_unverified_claims(self._access_token).get("exp", 0))
        except (JWTError, TypeError, ValueError):
            return 0.0

    def needs_refresh(self) -> bool:
        return self.token_expires_at() - self._clock() <= self.refresh_buffer_seconds

    def _clear(self) -> None:
        self._access_token = None
        self._user = None

    # ------------------------------------------------------------------
    # Credential calls
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, display_name: Optional[str] = None) -> dict:
        body: dict[str, Any] = {"email": email, "password": password}
        if display_name is not None:
            body["displayName"] = display_name
        return self._start_session(self._send("POST", "/auth/register", json=body), expected=201)

    def login(self, email: str, password: str) -> dict:
        resp = self._send("POST", "/auth/login", json={"email": email, "password": password})
        return self._start_session(resp, expected=200)

    def logout(self) -> None:
        """Tell the server to revoke the cookie's session, then forget local state.

        Local state is cleared even if the call fails: a client that asked
        to sign out must not keep acting as signed in.
        """
        try:
            self._send("POST", "/auth/logout")
        except requests.RequestException:
            logger.warning("Logout request failed; local session cleared anyway")
        finally:
            self._clear()

    def _start_session(self, resp: requests.Response, expected: int) -> dict:
        if resp.status_code != expected:
            raise AuthClientError.from_response(resp)
        data = resp.json()
        self._access_token = data["accessToken"]
        self._user = data["user"]
        return self._user

    # ------------------------------------------------------------------
    # Refresh / restore
    # ------------------------------------------------------------------

    def refresh(self) -> str:
        """Rotate the refresh cookie and return the new access token. De-duplicated."""
        return self._flights.run("refresh", self._do_refresh)

    def _do_refresh(self) -> str:
        resp = self._send("POST", "/auth/refresh")
        if resp.status_code == 401:
            self._clear()
            raise SessionExpired()
        if resp.status_code != 200:
            raise AuthClientError.from_response(resp)
        self._access_token = resp.json()["accessToken"]
        logger.debug("Access token refreshed")
        return self._access_token

    def restore(self) -> Optional[dict]:
        """Repopulate identity on startup. Returns the user, or None if not signed in. De-duplicated."""
        return self._flights.run("restore", self._do_restore)

    def _do_restore(self) -> Optional[dict]:
        try:
            if self._access_token is None:
                self.refresh()
            resp = self.request("GET", "/auth/me")
        except SessionExpired:
            return None
        if resp.status_code != 200:
            raise AuthClientError.from_response(resp)
        self._user = resp.json()["user"]
        return self._user

    # ------------------------------------------------------------------
    # Authenticated requests
    # ------------------------------------------------------------------

    def request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """Send an authenticated request, refreshing proactively and retrying once on 401."""
        if self._access_token is not None and self.needs_refresh():
            self.refresh()

        resp = self._send(method, path, bearer=True, **kwargs)
        if resp.status_code != 401:
            return resp

        self.refresh()
        resp = self._send(method, path, bearer=True, **kwargs)
        if resp.status_code == 401:
            self._clear()
            raise SessionExpired()
        return resp

    def _send(self, method: str, path: str, bearer: bool = False, **kwargs: Any) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if bearer and self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        kwargs.setdefault("timeout", self.timeout)
        return self._http.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------

    def start_background_refresh(self) -> None:
        if self._refresher is not None and self._refresher.is_alive():
            return
        self._stop.clear()
        self._refresher = threading.Thread(target=self._refresh_loop, name="session-refresh", daemon=True)
        self._refresher.start()

    def stop_background_refresh(self) -> None:
        self._stop.set()
        if self._refresher is not None:
            self._refresher.join(timeout=self.timeout)
            self._refresher = None

    def _refresh_loop(self) -> None:
        while not self._stop.wait(self.refresh_interval_seconds):
            if self._access_token is None:
                continue
            try:
                self.refresh()
            except SessionExpired:
                logger.info("Background refresh found the session expired; stopping")
                return
            except (AuthClientError, requests.RequestException) as exc:
                logger.warning("Background refresh failed: %s", exc)

    def close(self) -> None:
        self.stop_background_refresh()
        self._http.close()
