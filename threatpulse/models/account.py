"""ORM models for accounts and their profiles (auth and RBAC)."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, func
from sqlalchemy.orm import relationship

from threatpulse.models.base import Base


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Account(Base):
    """
    Credential record: email + bcrypt hash. One profile, at most one MFA config.

    email is stored lower-cased so lookups are case-insensitive.
    Deactivation (is_active=False) is the normal way to retire an account.
    """

    __tablename__ = "accounts"

    id = Column(String(32), primary_key=True, default=_new_id)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    profile = relationship(
        "Profile",
        back_populates="account",
        uselist=False,
        cascade="all, delete-orphan",
    )
    sessions = relationship(
        "AuthSession",
        back_populates="account",
        cascade="all, delete-orphan",
    )
    mfa_config = relationship(
        "MFAConfig",
        back_populates="account",
        uselist=False,
        cascade="all, delete-orphan",
    )


class Profile(Base):
    """
    Display data and role for an account.

    role: 'admin', 'manager' or 'analyst'. Any other stored value is treated as
    unresolvable and the account cannot sign in.
    """

    __tablename__ = "profiles"

    account_id = Column(
        String(32),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        primary_key=True,
    )
    name = Column(String(255), nullable=False)
    avatar_url = Column(String(2048), nullable=True)
    role = Column(String(32), nullable=False, default="analyst")
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    account = relationship("Account", back_populates="profile")
