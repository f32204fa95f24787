"""
api/routes/v1/auth.py -- Signup, verification, login, session and password-recovery endpoints.

Routes:
  POST /api/v1/auth/signup           -- create unverified account; emails a verification link (201)
  POST /api/v1/auth/verify-email     -- consume a verification token
  POST /api/v1/auth/login            -- password login; sets access/refresh cookies
  POST /api/v1/auth/logout           -- revoke the caller's session(s); clears cookies
  POST /api/v1/auth/refresh-token    -- rotate the token pair; resets cookies
  POST /api/v1/auth/forgot-password  -- email a password-reset link
  POST /api/v1/auth/reset-password   -- consume a reset token and set a new password

All routes are public: they are how a caller obtains or gives up credentials.
Cache-Control: no-store is set on every response that carries tokens.

Handlers are plain def: the service does blocking database and SMTP work,
and FastAPI runs sync handlers in its thread pool.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.models import (
    AccountEnvelope,
    AccountResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RefreshRequest,
    RefreshResponse,
    ResetPasswordRequest,
    SignupRequest,
    VerifyEmailRequest,
)
from auth.dependencies import extract_access_token, raise_http, unwrap_outcome
from auth.errors import AuthError, ErrorKind
from auth.service import AuthService
from auth.tokens import REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies
from core.config import Settings

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store"}


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _settings(request: Request) -> Settings:
    return request.app.state.settings


# ---------------------------------------------------------------------------
# Signup / verification
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=AccountEnvelope, status_code=201)
def signup(request: Request, body: SignupRequest) -> AccountEnvelope:
    """Register an account. It cannot log in until the email is verified."""
    result = unwrap_outcome(
        _service(request).signup(
            name=body.name,
            email=body.email,
            password=body.password,
            company_name=body.company_name,
        )
    )
    return AccountEnvelope(
        message="User registered successfully. Please check your email to verify your account.",
        user=AccountResponse.from_view(result.account),
    )


@router.post("/auth/verify-email", response_model=AccountEnvelope)
def verify_email(request: Request, body: VerifyEmailRequest) -> AccountEnvelope:
    view = unwrap_outcome(_service(request).verify_email(body.token))
    return AccountEnvelope(message="Email verified successfully.", user=AccountResponse.from_view(view))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set access and refresh cookies.

    Unknown email and wrong password return the same invalid_credentials
    error. Repeated failures lock the email out (429) for a window.
    """
    result = unwrap_outcome(
        _service(request).login(body.email, body.password, remember_me=body.remember_me),
        headers=_NO_STORE,
    )
    resp = JSONResponse(
        content=LoginResponse(
            user=AccountResponse.from_view(result.account),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            access_token_expires_at=result.access_token_expires_at,
            refresh_token_expires_at=result.refresh_token_expires_at,
        ).model_dump(mode="json"),
    )
    set_auth_cookies(
        resp,
        result.access_token,
        result.refresh_token,
        persistent=result.persistent,
        settings=_settings(request),
    )
    resp.headers.update(_NO_STORE)
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke every session holding the presented access or refresh token.

    Tokens come from the auth cookies, or a Bearer header for API clients.
    A caller with no token at all gets session_expired.
    """
    service = _service(request)
    tokens = {t for t in (extract_access_token(request), request.cookies.get(REFRESH_COOKIE)) if t}
    if not tokens:
        raise_http(AuthError(ErrorKind.SESSION_EXPIRED))
    for token in tokens:
        unwrap_outcome(service.logout(token))
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully.").model_dump())
    clear_auth_cookies(resp, _settings(request))
    return resp


@router.post("/auth/refresh-token", response_model=RefreshResponse)
def refresh_token(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair; the old pair stops working.

    The refresh cookie is preferred; API clients may send the token in the
    JSON body instead. Cookie lifetimes follow the session's remember-me flag.
    """
    token = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    if not token:
        raise_http(AuthError(ErrorKind.REFRESH_TOKEN_REQUIRED), _NO_STORE)
    result = unwrap_outcome(_service(request).refresh(token), headers=_NO_STORE)
    resp = JSONResponse(
        content=RefreshResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            access_token_expires_at=result.access_token_expires_at,
            refresh_token_expires_at=result.refresh_token_expires_at,
        ).model_dump(mode="json"),
    )
    set_auth_cookies(
        resp,
        result.access_token,
        result.refresh_token,
        persistent=result.persistent,
        settings=_settings(request),
    )
    resp.headers.update(_NO_STORE)
    return resp


# ---------------------------------------------------------------------------
# Password recovery
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    unwrap_outcome(_service(request).forgot_password(body.email))
    return MessageResponse(message="Password reset email sent successfully.")


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    unwrap_outcome(_service(request).reset_password(body.token, body.password))
    return MessageResponse(message="Password reset successfully.")
