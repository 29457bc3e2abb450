"""
API request and response models for Formwork HTTP endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclass in auth/models.py, which owns the
internal domain representation. Route handlers map between the two.

Request schemas carry every validation rule. Rules are checked when the class
is built, so a malformed rule fails at import time, never on a live request.
web/routes.py validates form posts with the same schemas.
"""

import re
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
URL_PATTERN = r"^https?://[^\s/$.?#][^\s]*$"

_LETTER_RE = re.compile(r"[A-Za-z]")
_DIGIT_RE = re.compile(r"\d")


def _blank_to_none(value: Any) -> Any:
    """HTML forms submit empty inputs as "". Optional fields treat that as absent."""
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _lower_email(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


# Annotated types shared by the request schemas below.
_Email = Annotated[str, BeforeValidator(_lower_email), Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)]
_Name = Annotated[str, Field(min_length=2, max_length=100)]
_Bio = Annotated[Optional[Annotated[str, Field(max_length=500)]], BeforeValidator(_blank_to_none)]
_AvatarUrl = Annotated[
    Optional[Annotated[str, Field(max_length=512, pattern=URL_PATTERN)]],
    BeforeValidator(_blank_to_none),
]


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload. Mirrors core.errors.error_payload()."""

    model_config = ConfigDict(frozen=True)

    type: str
    error: str
    message: str
    details: Optional[Any] = None
    code: int
    path: Optional[str] = None
    method: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: str


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health and JSON GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str
    timestamp: str
    service: str
    version: str
    uptime: str
    checks: dict[str, str]


# ---------------------------------------------------------------------------
# Auth requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login and POST /auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    password: str = Field(min_length=1, max_length=72)


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    name: _Name
    password: str = Field(min_length=8, max_length=72)
    confirm_password: str = Field(min_length=1, max_length=72)
    bio: _Bio = None
    avatar_url: _AvatarUrl = None

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        if not _LETTER_RE.search(value) or not _DIGIT_RE.search(value):
            raise ValueError("Password must contain at least one letter and one number")
        return value

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        return self


# ---------------------------------------------------------------------------
# User management requests
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /users. No password: the account signs in after registering."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email
    name: _Name
    bio: _Bio = None
    avatar_url: _AvatarUrl = None


class UserUpdate(BaseModel):
    """Request body for PUT /users/{id}. Email is immutable."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: _Name
    bio: _Bio = None
    avatar_url: _AvatarUrl = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. hashed_password is never exposed."""

    id: int
    email: str
    name: str
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool
    created_at: str
    updated_at: str


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class MeResponse(BaseModel):
    user_id: int
    email: str
    name: str
    is_active: bool


class UserCountResponse(BaseModel):
    count: int


class MessageResponse(BaseModel):
    message: str
