"""
API request and response models for the auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

The wire format is camelCase (accessToken, displayName) to match the web
client; Python attribute names stay snake_case via an alias generator.
Responses are always dumped with by_alias=True.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import UserProfile

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Body for POST /auth/register.

    Password strength is not checked here: the policy lives in the service so
    every caller (API, CLI, tests) gets the same rule and the same 400 body.
    max_length keeps absurd inputs away from bcrypt.

    Only email and display_name are stripped. The password is hashed exactly
    as sent, because login compares it exactly as sent.
    """

    email: str = Field(min_length=3, max_length=255, pattern=_EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=255)
    display_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email", "display_name", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value


class LoginRequest(_CamelModel):
    # No pattern on email: a malformed address must fail the same way as a
    # wrong password (401), not with a distinguishable 400.
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(_CamelModel):
    """Sanitized user. There is no field that could carry a hash or deletion marker."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    email: str
    display_name: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserOut":
        return cls(
            id=profile.id,
            email=profile.email,
            display_name=profile.display_name,
            created_at=profile.created_at,
        )


class AuthResponse(_CamelModel):
    """Body for register and login. The refresh token travels in the cookie only."""

    user: UserOut
    access_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int


class RefreshResponse(_CamelModel):
    access_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105
    expires_in: int


class MeResponse(_CamelModel):
    user: UserOut


class AuthStatusResponse(_CamelModel):
    authenticated: bool
    user_id: Optional[str] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
