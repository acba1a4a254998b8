"""ORM model for issued bearer sessions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from threatpulse.models.base import Base


class AuthSession(Base):
    """
    Server-side record of a session token.

    Only the SHA-256 of the token is stored. A bearer token is accepted only if
    its row exists, is not revoked and has not expired.
    """

    __tablename__ = "auth_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(
        String(32),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked = Column(Boolean, nullable=False, default=False, server_default="false")

    account = relationship("Account", back_populates="sessions")
