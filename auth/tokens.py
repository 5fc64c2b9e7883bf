"""
auth/tokens.py -- Signed, time-bounded access and refresh tokens.

Security design decisions:
  JWT: python-jose with HS256. Two independent secrets, one per token kind,
       so a leaked access secret cannot mint refresh tokens and vice versa.

  Claims: a fixed, versioned set (sub, typ, ver, iat, exp, jti). typ is
       checked on verify so a token of one kind is never accepted as the
       other even if an operator misconfigures both secrets to one value.
       jti is random per token, which keeps two refresh tokens issued in the
       same second distinct (the sessions table has a UNIQUE refresh_token).

  Expiry: absolute (iat + ttl), never sliding. jose's own exp check runs on
       the wall clock, so it is disabled and exp is compared against the
       injected clock instead, with zero leeway: a token is dead from the
       second its exp is reached.

  Failure: verify() returns a VerifyResult rather than raising. Every failure
       mode (malformed, bad signature, expired, wrong kind, bad claims) is a
       rejection with a reason string for logs; nothing is partially trusted.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from jose import JWTError, jwt

from auth.models import TokenClaims, TokenKind

_ALGORITHM = "HS256"
CLAIMS_VERSION = 1


@dataclass(frozen=True)
class VerifyResult:
    claims: TokenClaims | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


class TokenSigner:
    """Issues and verifies tokens for both kinds.

    Usage:
        signer = TokenSigner(access_secret, refresh_secret, access_ttl=900, refresh_ttl=604800, clock=utcnow)
        token = signer.issue(TokenKind.access, user_id)
        result = signer.verify(TokenKind.access, token)
        if result.ok:
            user_id = result.claims.sub
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: int,
        refresh_ttl: int,
        clock: Callable[[], datetime],
    ) -> None:
        self._secrets = {TokenKind.access: access_secret, TokenKind.refresh: refresh_secret}
        self._ttls = {TokenKind.access: access_ttl, TokenKind.refresh: refresh_ttl}
        self._clock = clock

    def ttl(self, kind: TokenKind) -> int:
        return self._ttls[kind]

    def issue(self, kind: TokenKind, subject: str, ttl: int | None = None) -> str:
        token, _claims = self.mint(kind, subject, ttl)
        return token

    def mint(self, kind: TokenKind, subject: str, ttl: int | None = None) -> tuple[str, TokenClaims]:
        """Issue a token and also return the claims it carries (the caller needs exp)."""
        now = int(self._clock().timestamp())
        claims = TokenClaims(
            sub=subject,
            kind=kind,
            iat=now,
            exp=now + (ttl if ttl is not None else self._ttls[kind]),
            jti=secrets.token_hex(16),
            ver=CLAIMS_VERSION,
        )
        return self.encode(claims), claims

    def encode(self, claims: TokenClaims) -> str:
        payload = {
            "sub": claims.sub,
            "typ": claims.kind.value,
            "ver": claims.ver,
            "iat": claims.iat,
            "exp": claims.exp,
            "jti": claims.jti,
        }
        return jwt.encode(payload, self._secrets[claims.kind], algorithm=_ALGORITHM)

    def verify(self, kind: TokenKind, token: str) -> VerifyResult:
        if not token:
            return VerifyResult(reason="missing")
        try:
            payload = jwt.decode(
                token,
                self._secrets[kind],
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError as exc:
            # jose raises JWTError for malformed input and for bad signatures
            # alike; the message is enough to tell them apart in logs.
            reason = "bad_signature" if "signature" in str(exc).lower() else "malformed"
            return VerifyResult(reason=reason)

        claims = _claims_from_payload(payload)
        if claims is None:
            return VerifyResult(reason="bad_claims")
        if claims.kind is not kind:
            return VerifyResult(reason="wrong_kind")
        if int(self._clock().timestamp()) >= claims.exp:
            return VerifyResult(reason="expired")
        return VerifyResult(claims=claims)


def _claims_from_payload(payload: dict) -> TokenClaims | None:
    try:
        if payload["ver"] != CLAIMS_VERSION:
            return None
        sub = payload["sub"]
        if not isinstance(sub, str) or not sub:
            return None
        return TokenClaims(
            sub=sub,
            kind=TokenKind(payload["typ"]),
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            jti=str(payload["jti"]),
            ver=payload["ver"],
        )
    except (KeyError, TypeError, ValueError):
        return None
