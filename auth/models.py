"""
auth/models.py -- Domain dataclasses for credential and session entities.

Pattern: Data class (pure data container, zero logic). Stores and the service
do the work; these classes only own the shape of each record.

Timestamps are timezone-aware UTC datetimes. Expiries are absolute instants,
never relative TTLs, so checking one needs nothing but "now".

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

ROLES: tuple[str, ...] = ("brand_owner", "admin", "brand_manager", "creator")
DEFAULT_ROLE = "brand_owner"


class TokenNamespace(str, Enum):
    """The two independent single-use token collections."""

    VERIFICATION = "verification"
    RESET = "reset"


@dataclass
class Account:
    """A registered identity.

    email is stored normalized (trimmed, lowercased). hashed_password is a
    bcrypt hash; the plaintext never reaches this object. is_email_verified
    flips exactly once, on successful verification. active is toggled by
    admin action outside this service and gates login and request auth.
    """

    email: str
    name: str
    hashed_password: str
    role: str = DEFAULT_ROLE
    company_name: str | None = None
    is_email_verified: bool = False
    active: bool = True
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class AccountView:
    """Redacted projection of an Account (no password hash)."""

    id: int
    name: str
    email: str
    company_name: str | None
    role: str
    is_email_verified: bool
    active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TransientToken:
    """An email-verification or password-reset token.

    Created on demand, deleted on use or on a use attempt after expiry,
    never updated. The namespace decides which table the record lives in.
    """

    namespace: TokenNamespace
    account_id: int
    token: str
    expires_at: datetime
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class LoginAttempt:
    """Failed-login counter for one email address.

    count starts at 1 on the first failure. updated_at moves on every
    increment and drives both the lockout window and retention purge.
    """

    email: str
    count: int
    updated_at: datetime
    created_at: datetime | None = None


@dataclass
class Session:
    """Server-side record binding one access/refresh token pair to an account.

    role is a snapshot taken at issuance and may drift from the account's
    live role. persistent ("remember me") is sticky for the session's life.
    """

    account_id: int
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    role: str
    persistent: bool = False
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class TokenPair:
    """A freshly minted access/refresh pair and their absolute expiries."""

    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    """Decoded, verified payload of an access or refresh token."""

    account_id: int
    role: str
    expires_at: datetime


@dataclass
class Plan:
    """A subscription plan and its per-resource quotas."""

    name: str
    resource_limits: dict[str, int] = field(default_factory=dict)
    id: int | None = None


@dataclass
class Subscription:
    """An account's subscription with its plan projected in.

    status: "active" | "pending" | "canceled" | "expired".
    """

    account_id: int
    plan: Plan | None
    status: str = "pending"
    resource_usage: dict[str, int] = field(default_factory=dict)
    id: int | None = None
