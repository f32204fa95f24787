"""
API request and response models for SessionKeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from auth.models import AccountView

# bcrypt ignores input past 72 bytes; 128 characters bounds request size.
_PASSWORD = Field(min_length=8, max_length=128)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=100)
    email: EmailStr
    password: str = _PASSWORD
    company_name: Optional[str] = Field(default=None, max_length=200)


class VerifyEmailRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=256)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    remember_me selects the long session lifetimes (1d access / 30d refresh
    by default) instead of the short ones.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    remember_me: bool = False


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh-token; the cookie wins."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: str = Field(min_length=1, max_length=256)
    password: str = _PASSWORD


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/users/change-password.

    confirm_password must repeat new_password exactly.
    """

    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = _PASSWORD
    confirm_password: str = Field(min_length=8, max_length=128)

    @model_validator(mode="after")
    def passwords_match(self) -> "ChangePasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self


class UpdateProfileRequest(BaseModel):
    """Request body for PUT /api/v1/users/profile. The email cannot be changed."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=100)
    company_name: Optional[str] = Field(default=None, max_length=200)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public projection of an account. Never carries the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str
    company_name: Optional[str] = None
    role: str
    is_email_verified: bool
    active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_view(cls, view: AccountView) -> "AccountResponse":
        return cls(
            id=view.id,
            name=view.name,
            email=view.email,
            company_name=view.company_name,
            role=view.role,
            is_email_verified=view.is_email_verified,
            active=view.active,
            created_at=view.created_at,
            updated_at=view.updated_at,
        )


class AccountEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: AccountResponse


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login.

    Tokens are also set as httpOnly cookies; the body copy serves API clients
    that send Authorization: Bearer instead.
    """

    model_config = ConfigDict(frozen=True)

    message: str = "Login successful."
    user: AccountResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Token refreshed successfully."
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


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

    status: str = "ok"
    version: str
