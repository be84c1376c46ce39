"""
Pydantic schemas for API validation and serialization
"""
from app.schemas.auth import (
    SignInRequest,
    ActivateAccountRequest,
    ResetPasswordRequest,
    ChangePasswordRequest,
    ProfileUpdateRequest,
    ForgotPasswordRequest,
    VerifyLinkRequest,
    TokenResponse,
    SessionResponse,
    LinkStateResponse,
    MessageResponse,
)

from app.schemas.user import (
    UserProfile,
    InviteUserRequest,
    RoleUpdateRequest,
    UserResponse,
    UserListResponse,
    InviteResponse,
    PermissionsResponse,
    RouteDecisionResponse,
)

__all__ = [
    # Auth
    "SignInRequest",
    "ActivateAccountRequest",
    "ResetPasswordRequest",
    "ChangePasswordRequest",
    "ProfileUpdateRequest",
    "ForgotPasswordRequest",
    "VerifyLinkRequest",
    "TokenResponse",
    "SessionResponse",
    "LinkStateResponse",
    "MessageResponse",
    # Users
    "UserProfile",
    "InviteUserRequest",
    "RoleUpdateRequest",
    "UserResponse",
    "UserListResponse",
    "InviteResponse",
    "PermissionsResponse",
    "RouteDecisionResponse",
]
