"""
auth/errors.py -- Error taxonomy and the Outcome result type.

Every expected failure of a credential operation has a stable machine-readable
code (ErrorKind) and an HTTP-equivalent status. The route layer maps an error
to an HTTP response without inspecting messages.

Public service and authenticator operations return Outcome[T] rather than
raising for expected outcomes ("token not found", "wrong password"). Inside
the service, helpers raise AuthError and a decorator folds it into an
Outcome at the public boundary. Storage failures and programming errors are
not AuthError and still propagate as exceptions.

Layer rule: stdlib only.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    EMAIL_EXISTS = "email_exists"
    VERIFICATION_ALREADY_SENT = "verification_already_sent"
    INVALID_VERIFICATION_TOKEN = "invalid_verification_token"
    INVALID_RESET_TOKEN = "invalid_reset_token"
    USER_NOT_FOUND = "user_not_found"
    INVALID_CREDENTIALS = "invalid_credentials"
    INCORRECT_PASSWORD = "incorrect_password"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    ACCOUNT_INACTIVE = "account_inactive"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    REFRESH_TOKEN_REQUIRED = "refresh_token_required"
    SESSION_EXPIRED = "session_expired"
    TOKEN_REQUIRED = "token_required"
    TOKEN_EXPIRED = "token_expired"
    INVALID_TOKEN = "invalid_token"
    EMAIL_FAILED = "email_failed"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    ACTIVE_SUBSCRIPTION_REQUIRED = "active_subscription_required"
    INSUFFICIENT_SUBSCRIPTION_PLAN = "insufficient_subscription_plan"
    INVALID_RESOURCE_TYPE = "invalid_resource_type"
    RESOURCE_LIMIT_REACHED = "resource_limit_reached"


# kind -> (status, default message)
_ERROR_TABLE: dict[ErrorKind, tuple[int, str]] = {
    ErrorKind.EMAIL_EXISTS: (400, "Email already exists."),
    ErrorKind.VERIFICATION_ALREADY_SENT: (
        400,
        "A verification email was already sent. Check your inbox or try again after the token expires.",
    ),
    ErrorKind.INVALID_VERIFICATION_TOKEN: (400, "Invalid or expired verification token."),
    ErrorKind.INVALID_RESET_TOKEN: (400, "Invalid or expired reset token."),
    ErrorKind.USER_NOT_FOUND: (404, "User not found."),
    ErrorKind.INVALID_CREDENTIALS: (401, "Invalid email or password."),
    ErrorKind.INCORRECT_PASSWORD: (401, "Incorrect password. Please try again."),
    ErrorKind.EMAIL_NOT_VERIFIED: (401, "Please verify your email first."),
    ErrorKind.ACCOUNT_INACTIVE: (401, "Your account is inactive. Please contact support."),
    ErrorKind.TOO_MANY_ATTEMPTS: (429, "Too many login attempts. Please try again after 15 minutes."),
    ErrorKind.INVALID_REFRESH_TOKEN: (401, "Invalid or expired refresh token."),
    ErrorKind.REFRESH_TOKEN_REQUIRED: (401, "Refresh token required."),
    ErrorKind.SESSION_EXPIRED: (401, "Session has expired. Please log in again."),
    ErrorKind.TOKEN_REQUIRED: (401, "Token required."),
    ErrorKind.TOKEN_EXPIRED: (401, "Access token expired."),
    ErrorKind.INVALID_TOKEN: (401, "Invalid token."),
    ErrorKind.EMAIL_FAILED: (500, "Failed to send email."),
    ErrorKind.INSUFFICIENT_PERMISSIONS: (403, "Insufficient permissions."),
    ErrorKind.ACTIVE_SUBSCRIPTION_REQUIRED: (403, "Active subscription required."),
    ErrorKind.INSUFFICIENT_SUBSCRIPTION_PLAN: (403, "Insufficient subscription plan."),
    ErrorKind.INVALID_RESOURCE_TYPE: (400, "Invalid resource type."),
    ErrorKind.RESOURCE_LIMIT_REACHED: (403, "Resource limit reached for your plan."),
}


class AuthError(Exception):
    """A typed, expected failure of a credential operation.

    status_code defaults from the kind but may be overridden: the request
    authenticator reports a missing account as 401 rather than 404.
    """

    def __init__(self, kind: ErrorKind, message: str | None = None, *, status_code: int | None = None) -> None:
        default_status, default_message = _ERROR_TABLE[kind]
        self.kind = kind
        self.message = message or default_message
        self.status_code = status_code or default_status
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.kind.value

    def to_detail(self) -> dict:
        """Return the {"code", "message"} dict used in HTTPException.detail."""
        return {"code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value!r}, status_code={self.status_code})"


class TokenExpiredError(AuthError):
    """Signature valid, token past its exp claim."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(ErrorKind.TOKEN_EXPIRED, message)


class TokenInvalidError(AuthError):
    """Bad signature, malformed token, wrong token type, or missing claims."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(ErrorKind.INVALID_TOKEN, message)


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Explicit success-or-failure value returned by public operations."""

    value: T | None = None
    error: AuthError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None

    @classmethod
    def success(cls, value: T | None = None) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AuthError) -> "Outcome[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried AuthError."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def returns_outcome(func: Callable[..., T]) -> Callable[..., Outcome[T]]:
    """Wrap a method that raises AuthError so it returns an Outcome instead."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Outcome[T]:
        try:
            return Outcome.success(func(*args, **kwargs))
        except AuthError as exc:
            return Outcome.failure(exc)

    return wrapper
