"""
User profile model for role and account status
"""
from datetime import datetime, timezone
from sqlalchemy import String, DateTime, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column
from typing import Optional
import uuid
import enum

from app.database import Base
from app.core.permissions import UserRole


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserStatus(str, enum.Enum):
    """Account lifecycle status"""
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    # Declared for parity with stored data; no transition leads here
    TERMINATED = "terminated"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base):
    """
    Application-level staff profile

    Keyed 1:1 to an identity by a shared id. Credentials never live here.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)

    role: Mapped[UserRole] = mapped_column(
        SQLEnum(UserRole, name="user_role", values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[UserStatus] = mapped_column(
        SQLEnum(UserStatus, name="user_status", values_callable=_enum_values),
        nullable=False,
        default=UserStatus.PENDING,
    )

    # Contact details, filled in at activation
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    profile_picture: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    invited_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<User {self.email} ({self.role}, {self.status})>"
