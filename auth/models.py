"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the service
do the work; these own the domain shape.

User is the stored record and carries the password hash. It never leaves the
auth package: everything handed to a caller goes through UserProfile.from_user()
first, which drops password_hash and deleted_at.

Layer rule: no imports from api/, client/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TokenKind(str, Enum):
    access = "access"
    refresh = "refresh"


@dataclass
class User:
    """A registered identity.

    email is stored normalized (stripped, lower-cased) so lookups are
    case-insensitive without relying on database collation.

    deleted_at is the soft-delete marker. Users are never hard-deleted so
    that session history keeps a valid owner reference.
    """

    email: str
    password_hash: str
    id: str | None = None  # opaque hex id, assigned by the store
    display_name: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass(frozen=True)
class UserProfile:
    """Sanitized view of a User -- the only user shape that crosses the service boundary."""

    id: str
    email: str
    display_name: str | None
    created_at: str | None

    @classmethod
    def from_user(cls, user: User) -> UserProfile:
        return cls(
            id=user.id or "",
            email=user.email,
            display_name=user.display_name,
            created_at=user.created_at,
        )


@dataclass
class Session:
    """One row per live refresh token.

    expires_at is an absolute epoch-seconds timestamp copied from the token's
    exp claim, so store-side expiry and signature-side expiry agree exactly.
    """

    user_id: str
    refresh_token: str
    expires_at: int
    id: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class TokenClaims:
    """Fixed, versioned claim set carried by every token.

    ver is bumped if the claim layout ever changes; verify() rejects versions
    it does not know.
    """

    sub: str
    kind: TokenKind
    iat: int
    exp: int
    jti: str
    ver: int = 1


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class AuthResult:
    """Outcome of register/login: the sanitized user plus a fresh token pair."""

    user: UserProfile
    tokens: TokenPair
