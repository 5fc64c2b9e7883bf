"""
auth/errors.py -- Error taxonomy for the authentication core.

Each class carries the HTTP status, a machine-readable code and the public
message. The API layer renders any AuthError with one exception handler, so
route code never builds error bodies by hand.

AuthenticationError is special: its public message is fixed. Whether the
email was unknown, the password wrong or the token tampered with, the caller
sees the same 401 body [anti-enumeration]. The internal cause goes in
`reason`, which is logged and never rendered.

There is no not-found error: logout treats a missing session row as a normal
result, and every other lookup miss is an authentication failure.
"""

from __future__ import annotations


class AuthError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    public_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.public_message
        super().__init__(self.message)


class ValidationError(AuthError):
    """Bad input: password policy violation, malformed email."""

    status_code = 400
    code = "validation_error"
    public_message = "Invalid input."


class AuthenticationError(AuthError):
    status_code = 401
    code = "unauthorized"
    public_message = "Authentication failed."

    def __init__(self, reason: str = "unspecified") -> None:
        # Message is never caller-supplied: identical output for every cause.
        super().__init__(None)
        self.reason = reason


class ConflictError(AuthError):
    status_code = 409
    code = "conflict"
    public_message = "An account with that email already exists."


class RateLimitError(AuthError):
    status_code = 429
    code = "rate_limited"
    public_message = "Too many authentication attempts. Please try again later."


class StoreError(AuthError):
    """Persistence failure translated at the service boundary. Details are logged, not returned."""
