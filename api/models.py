"""
API request and response models for SessionGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request bodies use camelCase on the wire (currentPassword, newPassword) and
snake_case attributes in Python; populate_by_name accepts either.

Validation failures surface as 400 with a list of {path, message} issues --
see the RequestValidationError handler in api/main.py.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.accounts import USERNAME_RE, normalize_username
from auth.models import User
from auth.passwords import check_password_policy

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_MAX_LENGTH = 254


def _username(value: str) -> str:
    normalized = normalize_username(value)
    if not USERNAME_RE.match(normalized):
        raise ValueError("Username must be 3-32 chars of a-z, 0-9, or underscore.")
    return normalized


def _new_password(value: str) -> str:
    errors = check_password_policy(value)
    if errors:
        raise ValueError(" ".join(errors))
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    username: str
    email: Optional[EmailStr] = None
    password: str

    @field_validator("username")
    @classmethod
    def check_username(cls, value: str) -> str:
        return _username(value)

    @field_validator("email", mode="before")
    @classmethod
    def check_email(cls, value: object) -> object:
        # Syntax is checked by EmailStr (email-validator, no deliverability lookup).
        if not isinstance(value, str):
            return value
        value = value.strip()
        if not value:
            return None
        if len(value) > EMAIL_MAX_LENGTH:
            raise ValueError("Email address is too long.")
        return value

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return _new_password(value)


class LoginRequest(BaseModel):
    username: str
    password: str = Field(min_length=1)

    @field_validator("username")
    @classmethod
    def check_username(cls, value: str) -> str:
        return _username(value)


class ChangePasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def check_new_password(cls, value: str) -> str:
        return _new_password(value)


class RequestPasswordResetRequest(BaseModel):
    """identifier is a username or an email address; the server tries both."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier: str = Field(min_length=3, max_length=EMAIL_MAX_LENGTH)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(min_length=1)
    new_password: str = Field(alias="newPassword")

    @field_validator("new_password")
    @classmethod
    def check_new_password(cls, value: str) -> str:
        return _new_password(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class OkResponse(BaseModel):
    ok: bool = True


class RequestPasswordResetResponse(BaseModel):
    """Identical for every outcome. dev_link only appears when FEATURE_DEV_RESET_LINK is on."""

    ok: bool = True
    dev_link: Optional[str] = None


class UserResponse(BaseModel):
    """Public projection of a user. Never carries the digest or lockout state."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, username=user.username, email=user.email)


class SessionResponse(BaseModel):
    authenticated: bool
    user: Optional[UserResponse] = None


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ValidationIssue(BaseModel):
    path: str
    message: str


class ErrorDetail(BaseModel):
    """Structured error information returned inside ErrorResponse."""

    code: str
    message: str
    detail: Optional[str] = None
    issues: Optional[list[ValidationIssue]] = None


class ErrorResponse(BaseModel):
    """Top-level envelope for all error responses.

    All error responses from the API use this shape so clients can handle
    errors uniformly: {"error": {"code": "...", "message": "...", ...}}
    """

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
