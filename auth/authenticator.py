"""
auth/authenticator.py -- Resolve a bearer token to a live session and account.

RequestAuthenticator is the consumer side of the session store: it verifies
an access token, requires a matching unexpired session row, and loads the
owning account together with its subscription/plan projection. A token that
verifies but whose session was revoked (logout, rotation) is rejected.

check_access() is the coarse authorization decision table evaluated after a
successful resolve: role allow-list, then, only when plans or a resource type
are requested, subscription status, plan allow-list and resource quota.

Layer rule: no imports from api/ or fastapi.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Sequence

from auth.errors import AuthError, ErrorKind, returns_outcome
from auth.models import Account, Session, Subscription
from auth.store import AuthStore
from auth.tokens import TokenIssuer

logger = logging.getLogger("sessionkeeper.authenticator")


@dataclass(frozen=True)
class AuthContext:
    """What downstream handlers know about the caller."""

    account: Account
    session: Session
    subscription: Subscription | None = None


class RequestAuthenticator:
    def __init__(
        self,
        store: AuthStore,
        issuer: TokenIssuer,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @returns_outcome
    def resolve(self, token: str | None) -> AuthContext:
        """Verify ``token`` and return the caller's context.

        Failure kinds: token_required (no token), token_expired,
        invalid_token (bad signature or no live session), user_not_found
        (reported as 401), account_inactive.
        """
        if not token:
            raise AuthError(ErrorKind.TOKEN_REQUIRED)

        claims = self._issuer.verify_access(token)

        session = self._store.find_live_session(token, claims.account_id, self._clock())
        if session is None:
            logger.warning("No live session for account %d", claims.account_id)
            raise AuthError(ErrorKind.INVALID_TOKEN)

        account = self._store.get_account_by_id(claims.account_id)
        if account is None:
            logger.warning("Token for missing account %d", claims.account_id)
            raise AuthError(ErrorKind.USER_NOT_FOUND, status_code=401)
        if not account.active:
            logger.warning("Inactive account %d attempted access", account.id)
            raise AuthError(ErrorKind.ACCOUNT_INACTIVE)

        subscription = self._store.get_subscription_for_account(account.id)
        return AuthContext(account=account, session=session, subscription=subscription)


def check_access(
    context: AuthContext,
    roles: Sequence[str] = (),
    plans: Sequence[str] = (),
    resource_type: str | None = None,
) -> AuthError | None:
    """Return the first failing rule as an AuthError, or None if access is allowed.

    Empty ``roles`` and ``plans`` mean "any".
    """
    if roles and context.account.role not in roles:
        return AuthError(ErrorKind.INSUFFICIENT_PERMISSIONS)

    if not plans and resource_type is None:
        return None

    subscription = context.subscription
    if subscription is None or subscription.plan is None or subscription.status != "active":
        return AuthError(ErrorKind.ACTIVE_SUBSCRIPTION_REQUIRED)

    if plans and subscription.plan.name not in plans:
        return AuthError(ErrorKind.INSUFFICIENT_SUBSCRIPTION_PLAN)

    if resource_type is not None:
        limit = subscription.plan.resource_limits.get(resource_type)
        if limit is None:
            return AuthError(ErrorKind.INVALID_RESOURCE_TYPE, f"Invalid resource type: {resource_type}.")
        usage = subscription.resource_usage.get(resource_type, 0)
        if usage >= limit:
            return AuthError(
                ErrorKind.RESOURCE_LIMIT_REACHED,
                f"You have reached your {resource_type} limit for your plan.",
            )

    return None
