"""
Pydantic schemas for authentication endpoints
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, EmailStr, Field, model_validator

from app.schemas.user import UserResponse


class SignInRequest(BaseModel):
    """Request schema for password sign-in"""
    email: EmailStr
    password: str = Field(..., min_length=1)


class _NewPasswordMixin(BaseModel):
    # Length is checked by the lifecycle service so every path reports the same message
    password: str
    confirm_password: Optional[str] = None

    @model_validator(mode="after")
    def passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match")
        return self


class ActivateAccountRequest(_NewPasswordMixin):
    """Request schema for completing an invitation"""
    full_name: str = Field(..., min_length=1, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    profile_picture: Optional[str] = Field(None, max_length=512)


class ResetPasswordRequest(_NewPasswordMixin):
    """Request schema for setting a new password from a recovery session"""


class ChangePasswordRequest(_NewPasswordMixin):
    """Request schema for changing password while signed in"""


class ProfileUpdateRequest(BaseModel):
    """Request schema for editing one's own contact details"""
    full_name: Optional[str] = Field(None, min_length=1, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    profile_picture: Optional[str] = Field(None, max_length=512)


class ForgotPasswordRequest(BaseModel):
    """Request schema for self-service password recovery"""
    email: EmailStr


class VerifyLinkRequest(BaseModel):
    """
    Parameters found on an invitation or recovery link

    Either pass ``url`` as landed on, or the individual parameters.
    """
    route: str = Field(..., pattern=r"^(activate|reset-password)$")
    url: Optional[str] = None
    token: Optional[str] = None
    type: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


# Response Schemas

class TokenResponse(BaseModel):
    """Response schema for session tokens"""
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime


class SessionResponse(BaseModel):
    """Response schema describing the caller's session"""
    state: str
    user: Optional[UserResponse] = None
    tokens: Optional[TokenResponse] = None
    activation_required: bool = False


class LinkStateResponse(BaseModel):
    """Response schema for the outcome of landing on a link"""
    route: str
    state: str
    message: Optional[str] = None
    trail: list[str]
    session: Optional[SessionResponse] = None


class MessageResponse(BaseModel):
    """Generic message response"""
    message: str
    status: str = "success"
