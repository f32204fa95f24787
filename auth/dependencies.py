"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is looked up in priority order:
  1. Cookie "access_token" -- set by POST /auth/login.
  2. Authorization: Bearer <token> header -- API clients.

get_current_account() resolves the token through the RequestAuthenticator on
app.state and raises HTTP 401 on failure. restrict_access() builds a
dependency that additionally applies the role / plan / resource decision
table and raises 403 (or 400 for an unknown resource type).

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from typing import Callable, NoReturn, Sequence, TypeVar

from fastapi import HTTPException, Request

from auth.authenticator import AuthContext, RequestAuthenticator, check_access
from auth.errors import AuthError, Outcome
from auth.models import Account
from auth.tokens import ACCESS_COOKIE

T = TypeVar("T")


def extract_access_token(request: Request) -> str | None:
    """Return the access token from the cookie, else from a Bearer header."""
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def raise_http(error: AuthError, headers: dict[str, str] | None = None) -> NoReturn:
    """Translate an AuthError into the HTTPException the error handler renders."""
    raise HTTPException(status_code=error.status_code, detail=error.to_detail(), headers=headers)


def unwrap_outcome(outcome: Outcome[T], headers: dict[str, str] | None = None) -> T:
    """Return the value of a successful Outcome or raise its error as HTTP."""
    if not outcome.ok:
        raise_http(outcome.error, headers)
    return outcome.value


def get_auth_context(request: Request) -> AuthContext:
    """Resolve the request's token. Attaches the context to request.state."""
    authenticator: RequestAuthenticator = request.app.state.authenticator
    context = unwrap_outcome(authenticator.resolve(extract_access_token(request)))
    request.state.auth_context = context
    request.state.account = context.account
    return context


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    return get_auth_context(request).account


def restrict_access(
    roles: Sequence[str] = (),
    plans: Sequence[str] = (),
    resource_type: str | None = None,
) -> Callable[[Request], Account]:
    """Build a dependency enforcing role, plan and resource-quota rules.

    Use as a FastAPI dependency:
        @router.post("/bots", dependencies=[Depends(restrict_access(plans=["pro"], resource_type="bots"))])
    """

    def dependency(request: Request) -> Account:
        context = get_auth_context(request)
        error = check_access(context, roles, plans, resource_type)
        if error is not None:
            raise_http(error)
        return context.account

    return dependency
