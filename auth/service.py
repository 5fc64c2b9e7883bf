"""
auth/service.py -- Register / login / refresh / logout / restore orchestration.

AuthService owns every business rule of the session lifecycle:

    None --login/register--> Active --refresh--> (Rotated -> Active)
                                    --logout---> Revoked
                                    --time-----> Expired

Collaborators are injected (credential store, session store, hasher, signer,
clock); nothing here reaches for a module-level singleton.

Rules worth knowing before editing:
  [C1] Login runs bcrypt on every path, including unknown and soft-deleted
       accounts, so timing does not enumerate emails.
  [C2] Every authentication failure raises AuthenticationError, whose public
       message is fixed. The reason string is for logs only.
  [C3] A refresh token is honored only if its signature verifies AND its
       session row exists and has not expired. The row is what makes
       rotation and revocation possible.
  [C4] Rotation is one store transaction (insert new, delete old). When two
       refreshes race on the same token the loser's delete matches nothing;
       that is a normal return value, its insert is rolled back, and the
       loser gets a plain 401. Exactly one new session survives.
  [C5] Logout is idempotent: deleting zero rows is success.
  [C6] Store exceptions never cross this boundary. IntegrityError on user
       creation becomes ConflictError; anything else is logged and becomes
       StoreError.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AuthenticationError, ConflictError, StoreError, ValidationError
from auth.models import AuthResult, Session, TokenKind, TokenPair, User, UserProfile
from auth.passwords import PasswordHasher, validate_password_policy
from auth.store import CredentialStore, SessionStore, create_auth_engine
from auth.tokens import TokenSigner
from core.config import Settings, utcnow

logger = logging.getLogger("mandarin.auth")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    return email.strip().lower()


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate persistence failures into StoreError [C6]."""
    try:
        yield
    except SQLAlchemyError:
        logger.exception("Store failure during %s", operation)
        raise StoreError() from None


class AuthService:
    """Authentication state machine over injected stores.

    Usage:
        service = AuthService(credentials, sessions, hasher, signer, clock=utcnow)
        result = service.login("alice@example.com", "Passw0rd1")
        pair = service.refresh(result.tokens.refresh_token)
        service.logout(pair.refresh_token)
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionStore,
        hasher: PasswordHasher,
        signer: TokenSigner,
        clock: Callable[[], datetime],
    ) -> None:
        self.credentials = credentials
        self.sessions = sessions
        self.hasher = hasher
        self.signer = signer
        self._clock = clock

    @property
    def access_token_ttl(self) -> int:
        return self.signer.ttl(TokenKind.access)

    # ------------------------------------------------------------------
    # Register / login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, display_name: str | None = None) -> AuthResult:
        email = normalize_email(email)
        if not _EMAIL_RE.match(email):
            raise ValidationError("A valid email address is required.")
        validate_password_policy(password)

        with _store_errors("register lookup"):
            existing = self.credentials.find_user_by_email(email)
        if existing is not None:
            raise ConflictError()

        password_hash = self.hasher.hash(password)
        with _store_errors("register insert"):
            try:
                user = self.credentials.create_user(
                    User(email=email, password_hash=password_hash, display_name=display_name)
                )
            except IntegrityError:
                # Lost a race with a concurrent registration of the same email.
                raise ConflictError() from None

        tokens = self._open_session(user.id)
        logger.info("User registered user_id=%s", user.id)
        return AuthResult(user=UserProfile.from_user(user), tokens=tokens)

    def login(self, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        with _store_errors("login lookup"):
            user = self.credentials.find_user_by_email(email)

        if user is None or user.is_deleted:
            self.hasher.burn(password)  # [C1]
            raise AuthenticationError("unknown_user" if user is None else "deleted_user")
        if not self.hasher.verify(password, user.password_hash):
            raise AuthenticationError("bad_password")

        tokens = self._open_session(user.id)
        logger.info("User logged in user_id=%s", user.id)
        return AuthResult(user=UserProfile.from_user(user), tokens=tokens)

    # ------------------------------------------------------------------
    # Refresh / logout
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str | None) -> TokenPair:
        """Exchange a live refresh token for a new pair, retiring the old session.

        Two concurrent calls with the same token: one rotates, the other
        raises AuthenticationError("superseded") [C4]. The losing caller's
        cookie still holds the retired token, so a client that treats a
        failed refresh as sign-out (SessionClient raises SessionExpired) is
        signed out in that tab or process. A fresh login recovers it.
        """
        result = self.signer.verify(TokenKind.refresh, refresh_token or "")
        if not result.ok:
            raise AuthenticationError(result.reason or "invalid")
        claims = result.claims

        with _store_errors("refresh lookup"):
            session = self.sessions.find_session_by_token(refresh_token)
        if session is None:
            raise AuthenticationError("revoked")  # [C3]
        if session.expires_at <= int(self._clock().timestamp()):
            with _store_errors("refresh reap"):
                self.sessions.delete_session(session.id)
            raise AuthenticationError("expired")
        if session.user_id != claims.sub:
            raise AuthenticationError("subject_mismatch")

        with _store_errors("refresh owner lookup"):
            owner = self.credentials.find_user_by_id(session.user_id)
        if owner is None or owner.is_deleted:
            raise AuthenticationError("deleted_user")

        pair, new_session = self._mint_pair(session.user_id)
        with _store_errors("refresh rotate"):
            rotated = self.sessions.rotate_session(session.id, new_session)
        if rotated is None:
            # [C4] A concurrent refresh already rotated this session.
            logger.info("Refresh lost rotation race user_id=%s session_id=%s", session.user_id, session.id)
            raise AuthenticationError("superseded")

        logger.info("Session rotated user_id=%s old=%s new=%s", session.user_id, session.id, rotated.id)
        return pair

    def logout(self, refresh_token: str | None) -> int:
        """Delete the session(s) holding this token. Always succeeds [C5].

        Returns the number of rows removed (0 for an unknown, already-revoked,
        or absent token). A store failure here is logged, not raised: the
        caller's cookie is cleared either way and expiry reaps the row later.
        """
        if not refresh_token:
            return 0
        try:
            removed = self.sessions.delete_sessions_by_token(refresh_token)
        except SQLAlchemyError:
            logger.exception("Store failure during logout; session left to expire")
            return 0
        logger.info("Logout removed %d session(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def authenticate_access(self, access_token: str | None) -> str:
        """Verify an access token statelessly and return the subject user id.

        No store lookup: access tokens stay valid until their own exp even
        after the refresh token that accompanied them was rotated or revoked.
        """
        result = self.signer.verify(TokenKind.access, access_token or "")
        if not result.ok:
            raise AuthenticationError(result.reason or "invalid")
        return result.claims.sub

    def get_user(self, user_id: str) -> UserProfile:
        with _store_errors("user lookup"):
            user = self.credentials.find_user_by_id(user_id)
        if user is None or user.is_deleted:
            raise AuthenticationError("deleted_user")
        return UserProfile.from_user(user)

    def restore(self, access_token: str | None) -> UserProfile:
        """Who-am-I for a client that reloaded: verify the token, return the sanitized profile."""
        return self.get_user(self.authenticate_access(access_token))

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def deactivate_user(self, email: str) -> bool:
        """Soft-delete a user and drop all of their sessions.

        Returns False if no active user has that email.
        """
        with _store_errors("deactivate"):
            user = self.credentials.find_user_by_email(normalize_email(email))
            if user is None or not self.credentials.soft_delete_user(user.id):
                return False
            removed = self.sessions.delete_sessions_for_user(user.id)
        logger.info("User deactivated user_id=%s sessions_removed=%d", user.id, removed)
        return True

    def active_session_count(self, email: str) -> int | None:
        with _store_errors("session count"):
            user = self.credentials.find_user_by_email(normalize_email(email))
            if user is None:
                return None
            return self.sessions.count_sessions_for_user(user.id)

    def purge_expired_sessions(self) -> int:
        with _store_errors("purge"):
            removed = self.sessions.purge_expired()
        if removed:
            logger.info("Purged %d expired session(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mint_pair(self, user_id: str) -> tuple[TokenPair, Session]:
        access_token = self.signer.issue(TokenKind.access, user_id)
        refresh_token, refresh_claims = self.signer.mint(TokenKind.refresh, user_id)
        pair = TokenPair(access_token=access_token, refresh_token=refresh_token)
        return pair, Session(user_id=user_id, refresh_token=refresh_token, expires_at=refresh_claims.exp)

    def _open_session(self, user_id: str) -> TokenPair:
        pair, session = self._mint_pair(user_id)
        with _store_errors("session create"):
            self.sessions.create_session(session)
        return pair


def create_auth_service(settings: Settings, clock: Callable[[], datetime] = utcnow) -> AuthService:
    """Wire an AuthService from settings: engine, both stores, hasher and signer.

    The caller owns the result and disposes service.credentials.engine on shutdown.
    """
    engine = create_auth_engine(settings.database_url)
    signer = TokenSigner(
        access_secret=settings.access_token_secret,
        refresh_secret=settings.refresh_token_secret,
        access_ttl=settings.access_token_ttl_seconds,
        refresh_ttl=settings.refresh_token_ttl_seconds,
        clock=clock,
    )
    return AuthService(
        credentials=CredentialStore(engine, clock=clock),
        sessions=SessionStore(engine, clock=clock),
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        signer=signer,
        clock=clock,
    )
