"""
Pydantic schemas for user profiles and user management endpoints
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.core.permissions import UserRole
from app.models.user import UserStatus


class UserProfile(BaseModel):
    """A row of the users table as seen by the access layer"""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    email: str
    role: UserRole
    status: UserStatus
    full_name: Optional[str] = None
    phone: Optional[str] = None
    profile_picture: Optional[str] = None
    invited_by: Optional[str] = None
    activated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class InviteUserRequest(BaseModel):
    """Request schema for inviting a staff member"""
    email: EmailStr
    role: str = Field(..., description="One of super_admin, doctor, nurse, receptionist")


class RoleUpdateRequest(BaseModel):
    """Request schema for changing a user's role"""
    role: str


# Response Schemas

class UserResponse(BaseModel):
    """Response schema for user data"""
    id: str
    email: str
    role: UserRole
    status: UserStatus
    full_name: Optional[str] = None
    phone: Optional[str] = None
    profile_picture: Optional[str] = None
    invited_by: Optional[str] = None
    activated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_profile(cls, profile: UserProfile) -> "UserResponse":
        return cls(**profile.model_dump())


class UserListResponse(BaseModel):
    users: List[UserResponse]
    total: int


class InviteResponse(BaseModel):
    message: str
    user: UserResponse


class PermissionsResponse(BaseModel):
    role: Optional[UserRole] = None
    is_super_admin: bool
    permissions: Dict[str, bool]


class RouteDecisionResponse(BaseModel):
    route: str
    allowed: bool
    redirect_to: Optional[str] = None
    reason: Optional[str] = None
