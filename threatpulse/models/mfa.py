"""ORM model for second-factor (TOTP) enrollment state."""

from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from threatpulse.models.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class MFAConfig(Base):
    """
    TOTP secret and recovery codes for one account.

    pending_* columns hold an enrollment in progress; they are cleared when the
    enrollment completes. Recovery codes are kept only as SHA-256 hashes once
    enabled. Disabling MFA deletes the row.
    """

    __tablename__ = "mfa_configs"

    account_id = Column(
        String(32),
        ForeignKey("accounts.id", ondelete="CASCADE"),
        primary_key=True,
    )
    enabled = Column(Boolean, nullable=False, default=False, server_default="false")
    secret = Column(String(64), nullable=True)
    backup_code_hashes = Column(JSONType, nullable=False, default=list)
    pending_secret = Column(String(64), nullable=True)
    pending_backup_codes = Column(JSONType, nullable=True)
    # Counter of the last TOTP code accepted at sign-in; older or equal steps are replays.
    last_totp_step = Column(BigInteger, nullable=True)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    account = relationship("Account", back_populates="mfa_config")
