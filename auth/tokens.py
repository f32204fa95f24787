"""
auth/tokens.py -- JWT issuance, password hashing, random tokens, auth cookies.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       distinct secrets, so a leaked refresh secret cannot forge access tokens
       and vice versa. Both carry account_id, role, a token type, a random jti
       and an expiry. The jti makes every minted token unique even when two
       pairs are issued for the same account within the same second.
       Verification raises TokenExpiredError or TokenInvalidError; the
       difference drives session deletion on refresh.

  Passwords: bcrypt directly (no passlib wrapper). The cost factor comes from
       Settings.bcrypt_rounds so tests can run at the minimum cost.

  Transient tokens: secrets.token_hex(32) gives 256 bits of entropy for
       email-verification and password-reset links.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

import bcrypt
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from auth.errors import TokenExpiredError, TokenInvalidError
from auth.models import TokenClaims, TokenPair
from core.config import Settings, get_settings

logger = logging.getLogger("sessionkeeper.tokens")

_ALGORITHM = "HS256"

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    128 characters; callers must not rely on anything past byte 72.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# ---------------------------------------------------------------------------
# Transient tokens
# ---------------------------------------------------------------------------


def generate_transient_token() -> str:
    """Return 32 random bytes as 64 hex characters."""
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# JWT issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints and verifies signed access/refresh tokens.

    Usage:
        issuer = TokenIssuer.from_settings(get_settings())
        pair = issuer.issue(account_id=1, role="admin", persistent=False)
        claims = issuer.verify_access(pair.access_token)
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TokenIssuer":
        return cls(settings or get_settings())

    def issue(self, account_id: int, role: str, persistent: bool, now: datetime | None = None) -> TokenPair:
        """Mint a new access+refresh pair.

        persistent selects the long ("remember me") lifetimes. Expiries are
        truncated to whole seconds because the exp claim is an integer; the
        returned datetimes equal what a verifier will later decode.
        """
        issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        access_expires = issued_at + self._settings.access_lifetime(persistent)
        refresh_expires = issued_at + self._settings.refresh_lifetime(persistent)
        access_token = self._encode(account_id, role, "access", issued_at, access_expires)
        refresh_token = self._encode(account_id, role, "refresh", issued_at, refresh_expires)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=access_expires.replace(microsecond=0),
            refresh_token_expires_at=refresh_expires.replace(microsecond=0),
        )

    def verify_access(self, token: str) -> TokenClaims:
        return self._decode(token, self._settings.access_token_secret, "access")

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._decode(token, self._settings.refresh_token_secret, "refresh")

    def _encode(self, account_id: int, role: str, token_type: str, issued_at: datetime, expires: datetime) -> str:
        secret = self._settings.access_token_secret if token_type == "access" else self._settings.refresh_token_secret
        payload = {
            "sub": str(account_id),
            "account_id": account_id,
            "role": role,
            "type": token_type,
            "jti": secrets.token_hex(16),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires.timestamp()),
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    @staticmethod
    def _decode(token: str, secret: str, token_type: str) -> TokenClaims:
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            raise TokenInvalidError() from exc
        if payload.get("type") != token_type or "account_id" not in payload or "role" not in payload:
            raise TokenInvalidError()
        return TokenClaims(
            account_id=int(payload["account_id"]),
            role=str(payload["role"]),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def _cookie_options(settings: Settings) -> dict:
    return {
        "httponly": True,
        "samesite": "none" if settings.secure_cookies else "lax",
        "secure": settings.secure_cookies,
        "domain": settings.cookie_domain or None,
        "path": "/",
    }


def set_auth_cookies(
    response,
    access_token: str,
    refresh_token: str,
    persistent: bool = False,
    settings: Settings | None = None,
) -> None:
    """Write both tokens as httpOnly cookies on the response.

    Both cookies live as long as the refresh token. An access cookie that
    outlives its JWT lets the authenticator answer "token_expired" instead of
    "token_required", which is the client's cue to call refresh.

    samesite="none" requires secure=True, so it is only used together with
    SECURE_COOKIES=true (cross-site production frontends).
    """
    settings = settings or get_settings()
    max_age = int(settings.refresh_lifetime(persistent).total_seconds())
    options = _cookie_options(settings)
    response.set_cookie(ACCESS_COOKIE, value=access_token, max_age=max_age, **options)
    response.set_cookie(REFRESH_COOKIE, value=refresh_token, max_age=max_age, **options)


def clear_auth_cookies(response, settings: Settings | None = None) -> None:
    options = _cookie_options(settings or get_settings())
    response.delete_cookie(ACCESS_COOKIE, **options)
    response.delete_cookie(REFRESH_COOKIE, **options)
