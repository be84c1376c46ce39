"""
Database models
"""
from app.models.user import User, UserStatus
from app.models.identity import Identity
from app.core.permissions import UserRole

__all__ = [
    "User",
    "UserRole",
    "UserStatus",
    "Identity",
]
