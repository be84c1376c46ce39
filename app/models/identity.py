"""
Credential records for the built-in identity provider
"""
from datetime import datetime
from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from typing import Optional
import uuid

from app.database import Base
from app.models.user import utcnow


class Identity(Base):
    """
    Identity owned by the local identity provider

    Invited identities have no password hash until the invitee activates.
    """
    __tablename__ = "identities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    email_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_sign_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<Identity {self.email}>"
