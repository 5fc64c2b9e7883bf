"""
auth/passwords.py -- Password policy and bcrypt hashing.

Using bcrypt directly rather than passlib[bcrypt]: passlib's wrap-bug
detection feeds bcrypt a >72-byte password, which bcrypt 4.x+ rejects. Direct
usage is simpler and has no compatibility shim.

bcrypt only looks at the first 72 bytes of input (and recent releases raise on
longer input). The policy check rejects such passwords up front instead of
letting two different long passwords hash to the same value.
"""

from __future__ import annotations

import re

import bcrypt

from auth.errors import ValidationError

_POLICY_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d).{8,}$", re.DOTALL)
_BCRYPT_MAX_BYTES = 72

POLICY_MESSAGE = "Password must be at least 8 characters with 1 uppercase, 1 lowercase, 1 number."


def validate_password_policy(password: str) -> None:
    """Raise ValidationError unless the password meets the strength policy."""
    if not _POLICY_RE.match(password):
        raise ValidationError(POLICY_MESSAGE)
    if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes.")


class PasswordHasher:
    """Salted one-way hashing with a tunable cost factor.

    Usage:
        hasher = PasswordHasher(rounds=12)
        stored = hasher.hash("Str0ngPass")
        hasher.verify("Str0ngPass", stored)   # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Timing equalization dummy [C1]. Computed once so the first login
        # attempt against an unknown email costs the same as later ones.
        self._dummy_hash = self.hash("mandarin_timing_dummy")

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if plain matches hashed. Never raises.

        bcrypt.checkpw compares digests in constant time. A malformed hash,
        non-ASCII garbage or an over-long password all come back as False.
        """
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except Exception:
            return False

    def burn(self, plain: str) -> None:
        """Spend one verify's worth of work against the dummy hash.

        Called when there is no real hash to check (unknown or deleted
        account) so response time does not reveal which case occurred.
        """
        self.verify(plain, self._dummy_hash)
