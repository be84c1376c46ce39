"""
User management API endpoints (super admins only)
"""
import logging

from fastapi import APIRouter, Depends, Query, status

from app.dependencies import Services, get_current_session, get_services
from app.schemas.auth import MessageResponse
from app.schemas.user import (
    InviteResponse,
    InviteUserRequest,
    RoleUpdateRequest,
    UserListResponse,
    UserResponse,
)
from app.services.session_store import Session

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/users", tags=["Users"])


@router.get("", response_model=UserListResponse)
async def list_users(
    session: Session = Depends(get_current_session),
    services: Services = Depends(get_services),
):
    """All user profiles, newest first"""
    profiles = await services.lifecycle.list_users(session)
    return UserListResponse(
        users=[UserResponse.from_profile(p) for p in profiles],
        total=len(profiles),
    )


@router.post("/invite", response_model=InviteResponse, status_code=status.HTTP_201_CREATED)
async def invite_user(
    data: InviteUserRequest,
    session: Session = Depends(get_current_session),
    services: Services = Depends(get_services),
):
    """
    Invite a staff member

    - Creates the account and emails an activation link
    - The new profile starts as ``pending``
    """
    logger.info("=" * 80)
    logger.info("INVITATION REQUEST RECEIVED")
    logger.info("=" * 80)
    logger.info(f"📧 Email: {data.email}")
    logger.info(f"👤 Role: {data.role}")

    profile = await services.lifecycle.invite(session, data.email, data.role)
    return InviteResponse(
        message=f"Invitation sent to {profile.email}",
        user=UserResponse.from_profile(profile),
    )


@router.post("/{user_id}/deactivate", response_model=UserResponse)
async def deactivate_user(
    user_id: str,
    session: Session = Depends(get_current_session),
    services: Services = Depends(get_services),
):
    profile = await services.lifecycle.deactivate(session, user_id)
    return UserResponse.from_profile(profile)


@router.post("/{user_id}/reactivate", response_model=UserResponse)
async def reactivate_user(
    user_id: str,
    session: Session = Depends(get_current_session),
    services: Services = Depends(get_services),
):
    profile = await services.lifecycle.reactivate(session, user_id)
    return UserResponse.from_profile(profile)


@router.patch("/{user_id}/role", response_model=UserResponse)
async def change_role(
    user_id: str,
    data: RoleUpdateRequest,
    session: Session = Depends(get_current_session),
    services: Services = Depends(get_services),
):
    """Change a user's role; takes effect in their open sessions immediately"""
    profile = await services.lifecycle.change_role(session, user_id, data.role)
    return UserResponse.from_profile(profile)


@router.post("/{user_id}/reset-password", response_model=MessageResponse)
async def send_password_reset(
    user_id: str,
    session: Session = Depends(get_current_session),
    services: Services = Depends(get_services),
):
    """Email the user a password reset link"""
    await services.lifecycle.reset_password(session, user_id)
    return MessageResponse(message="Password reset email sent")


@router.delete("/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: str,
    confirm: bool = Query(False, description="Must be true; deletion cannot be undone"),
    session: Session = Depends(get_current_session),
    services: Services = Depends(get_services),
):
    """Permanently delete a user's account and profile"""
    await services.lifecycle.delete_user(session, user_id, confirm=confirm)
    return MessageResponse(message="User deleted")
