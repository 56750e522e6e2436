"""
User model: the authentication identity.

Each User is a login credential (email + hashed password) with a role:

  - ADMIN: elevated privilege required for refunds, manual capture/cancel
    and dead-letter job triage
  - MEMBER: the default role for signup; can create payments for records
    and read their own transactions

Admins are provisioned by an operator (see demo/promote_admin.py), never
through self-service signup.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Boolean, DateTime, Enum
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class UserType(str, enum.Enum):
    """
    Role a user holds within the payments system.

    Inherits from str so the enum value serializes naturally to JSON.
    """
    ADMIN = "admin"
    MEMBER = "member"


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Email is the login identifier, unique and indexed for fast lookups
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    # Argon2id hash of the password (never store plaintext!)
    hashed_password: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    full_name: Mapped[str | None] = mapped_column(
        String(200),
        nullable=True,
    )

    user_type: Mapped[UserType] = mapped_column(
        Enum(UserType),
        default=UserType.MEMBER,
        nullable=False,
    )

    # Soft-disable: deactivated users can't log in but their payments are preserved
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
