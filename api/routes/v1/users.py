"""
api/routes/v1/users.py -- Account self-service and admin ban endpoints.

Routes:
  GET    /api/v1/users/me            -- current account (requires auth)
  PATCH  /api/v1/users/me            -- change name and/or email (requires auth)
  PUT    /api/v1/users/me/password   -- change password (requires auth)
  DELETE /api/v1/users/me            -- delete own account; revokes all sessions (requires auth)
  DELETE /api/v1/users/{user_id}     -- ban a user; revokes all sessions (admin only)

Deletion is a soft delete. The account disappears from every lookup, its
refresh tokens are revoked in the same transaction, and its email stays
reserved.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import ChangePasswordRequest, MessageResponse, UpdateProfileRequest, UserResponse
from api.routes.v1.auth import check_password_policy
from auth.dependencies import get_current_user, require_admin
from auth.errors import AuthError, ErrorKind
from auth.models import AccessClaims, User

# Auth policy:
# - /users/me*:        requires auth (get_current_user)
# - /users/{user_id}:  requires admin (require_admin)
router = APIRouter()


@router.get("/users/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(current_user)


@router.patch("/users/me", response_model=UserResponse)
def update_me(
    request: Request,
    body: UpdateProfileRequest,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    user = request.app.state.credentials.update_profile(current_user.id, name=body.name, email=body.email)
    return UserResponse.from_user(user)


@router.put("/users/me/password", response_model=MessageResponse)
def change_my_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    check_password_policy(request, body.new_password)
    request.app.state.credentials.change_password(current_user.id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed.")


@router.delete("/users/me", status_code=204)
def delete_me(request: Request, current_user: User = Depends(get_current_user)) -> Response:
    request.app.state.credentials.delete(current_user.id)
    return Response(status_code=204)


@router.delete("/users/{user_id}", status_code=204)
def ban_user(request: Request, user_id: int, admin: AccessClaims = Depends(require_admin)) -> Response:
    """Soft-delete another account and revoke its sessions. Admins cannot ban themselves."""
    if user_id == admin.user_id:
        raise AuthError(ErrorKind.BAD_REQUEST, "cannot_ban_self", "Admins cannot ban their own account.")
    request.app.state.credentials.delete(user_id)
    return Response(status_code=204)
