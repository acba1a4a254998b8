"""SQLAlchemy ORM models."""

from threatpulse.models.account import Account, Profile
from threatpulse.models.base import Base
from threatpulse.models.mfa import MFAConfig
from threatpulse.models.session import AuthSession

__all__ = ["Account", "AuthSession", "Base", "MFAConfig", "Profile"]
