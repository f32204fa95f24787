"""
api/routes/v1/users.py -- Endpoints for the authenticated account.

Routes:
  GET  /api/v1/users/me               -- current account (requires auth)
  PUT  /api/v1/users/profile          -- update name / company (requires auth)
  POST /api/v1/users/change-password  -- change password (requires auth)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    AccountEnvelope,
    AccountResponse,
    ChangePasswordRequest,
    MessageResponse,
    UpdateProfileRequest,
)
from auth.dependencies import get_current_account, unwrap_outcome
from auth.models import Account
from auth.service import AuthService

router = APIRouter()


@router.get("/users/me", response_model=AccountEnvelope)
def me(request: Request, account: Account = Depends(get_current_account)) -> AccountEnvelope:
    service: AuthService = request.app.state.auth_service
    view = unwrap_outcome(service.get_account(account.id))
    return AccountEnvelope(message="User profile retrieved successfully.", user=AccountResponse.from_view(view))


@router.put("/users/profile", response_model=AccountEnvelope)
def update_profile(
    request: Request,
    body: UpdateProfileRequest,
    account: Account = Depends(get_current_account),
) -> AccountEnvelope:
    service: AuthService = request.app.state.auth_service
    view = unwrap_outcome(service.update_profile(account.id, body.name, company_name=body.company_name))
    return AccountEnvelope(message="Profile updated successfully.", user=AccountResponse.from_view(view))


@router.post("/users/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    account: Account = Depends(get_current_account),
) -> MessageResponse:
    """Change the caller's password. Existing sessions stay valid."""
    service: AuthService = request.app.state.auth_service
    unwrap_outcome(service.change_password(account.id, body.current_password, body.new_password))
    return MessageResponse(message="Password changed successfully.")
