"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore and SessionStore are the
repositories; _row_to_user / _row_to_session are the mappers. Service and
route code never touches SQL directly.

Both stores are built around an Engine the caller creates with
create_auth_engine() and passes in explicitly. There is no module-level
connection, so tests can point each store at an isolated database.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  No application-level locks. Every mutating method is a single statement or
  a single transaction and reports "nothing matched" through its return value
  (rowcount), never through an exception. rotate_session() inserts the new
  row and deletes the old one in one transaction; if the delete matches
  nothing, another request already rotated the same session, and the insert
  is rolled back so the loser leaves no extra session behind.

Timestamps:
  created_at / updated_at / deleted_at are ISO 8601 strings (display only).
  sessions.expires_at is integer epoch seconds because it is compared in SQL.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Session, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # normalized lower-case
    Column("password_hash", Text, nullable=False),
    Column("display_name", String(100)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),  # soft-delete marker; NULL = active
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False),
    Column("refresh_token", Text, nullable=False, unique=True),
    Column("expires_at", Integer, nullable=False),  # epoch seconds
    Column("created_at", String(32), nullable=False),
)

Index("ix_sessions_user_id", _sessions.c.user_id)
Index("ix_sessions_expires_at", _sessions.c.expires_at)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys for each new SQLite connection.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_auth_engine(db_url: str) -> Engine:
    """Create the engine and make sure both tables exist."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    _metadata.create_all(engine)
    return engine


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User records.

    Usage:
        engine = create_auth_engine("sqlite:///auth.db")
        users = CredentialStore(engine, clock=utcnow)
        user = users.create_user(User(email="a@b.c", password_hash=hasher.hash("Str0ngPass")))
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime]) -> None:
        self.engine = engine
        self._clock = clock

    def create_user(self, user: User) -> User:
        """Insert a user and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        The service turns that into ConflictError; it is the backstop for two
        concurrent registrations of the same address.
        """
        now = self._clock().isoformat()
        user_id = _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    password_hash=user.password_hash,
                    display_name=user.display_name,
                    created_at=now,
                    updated_at=now,
                )
            )
        return User(
            id=user_id,
            email=user.email,
            password_hash=user.password_hash,
            display_name=user.display_name,
            created_at=now,
            updated_at=now,
        )

    def find_user_by_email(self, email: str) -> User | None:
        """Exact match on the normalized email. Soft-deleted users are returned too."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_user_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def soft_delete_user(self, user_id: str) -> bool:
        """Stamp deleted_at. Returns False if the user is unknown or already deleted."""
        now = self._clock().isoformat()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.deleted_at.is_(None)))
                .values(deleted_at=now, updated_at=now)
            )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for refresh-token sessions. The only shared mutable state in the core."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime]) -> None:
        self.engine = engine
        self._clock = clock

    def create_session(self, session: Session) -> Session:
        now = self._clock().isoformat()
        session_id = _new_id()
        with self.engine.begin() as conn:
            conn.execute(_sessions.insert().values(**_session_values(session, session_id, now)))
        return Session(
            id=session_id,
            user_id=session.user_id,
            refresh_token=session.refresh_token,
            expires_at=session.expires_at,
            created_at=now,
        )

    def find_session_by_token(self, refresh_token: str) -> Session | None:
        """Look up a session by its refresh token. Expired rows are returned; the caller checks expiry."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.refresh_token == refresh_token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, session_id: str) -> bool:
        """Delete one session. Returns False if it was already gone -- not an error."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def delete_sessions_by_token(self, refresh_token: str) -> int:
        """Delete every session matching the token. Returns the count (0 is fine)."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.refresh_token == refresh_token))
        return result.rowcount

    def rotate_session(self, old_session_id: str, new_session: Session) -> Session | None:
        """Replace old_session_id with new_session atomically.

        Returns the stored new session, or None if the old row had already
        been deleted by a concurrent rotation. In that case the transaction is
        rolled back, so the new row never becomes visible.
        """
        now = self._clock().isoformat()
        session_id = _new_id()
        with self.engine.connect() as conn:
            with conn.begin() as txn:
                conn.execute(_sessions.insert().values(**_session_values(new_session, session_id, now)))
                deleted = conn.execute(_sessions.delete().where(_sessions.c.id == old_session_id)).rowcount
                if deleted == 0:
                    txn.rollback()
                    return None
        return Session(
            id=session_id,
            user_id=new_session.user_id,
            refresh_token=new_session.refresh_token,
            expires_at=new_session.expires_at,
            created_at=now,
        )

    def delete_sessions_for_user(self, user_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        return result.rowcount

    def count_sessions_for_user(self, user_id: str, include_expired: bool = False) -> int:
        query = select(func.count()).select_from(_sessions).where(_sessions.c.user_id == user_id)
        if not include_expired:
            query = query.where(_sessions.c.expires_at > int(self._clock().timestamp()))
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0

    def purge_expired(self) -> int:
        """Delete every session whose expiry has passed. Returns number of rows removed."""
        cutoff = int(self._clock().timestamp())
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= cutoff))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _session_values(session: Session, session_id: str, created_at: str) -> dict:
    return {
        "id": session_id,
        "user_id": session.user_id,
        "refresh_token": session.refresh_token,
        "expires_at": session.expires_at,
        "created_at": created_at,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        display_name=row.display_name,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        refresh_token=row.refresh_token,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
