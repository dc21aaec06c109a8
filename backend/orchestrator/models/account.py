"""Account model"""

import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Text, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from orchestrator.core.database import Base
from orchestrator.core.security import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class Account(Base):
    """Local username/password account, optionally with one TOTP factor"""

    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=new_id)
    username = Column(String(64), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    is_system_admin = Column(Boolean, default=False, nullable=False)
    totp_secret = Column(String(64), nullable=True)
    totp_enabled = Column(Boolean, default=False, nullable=False)
    # JSON list of SHA-256 digests of the outstanding backup codes
    backup_codes_json = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    last_login_at = Column(DateTime, nullable=True)

    # Relationships
    memberships = relationship("Membership", back_populates="account", cascade="all, delete-orphan")
    refresh_tokens = relationship("RefreshToken", cascade="all, delete-orphan")
    used_backup_codes = relationship("UsedBackupCode", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Account(id={self.id}, username='{self.username}', system_admin={self.is_system_admin})>"


class UsedBackupCode(Base):
    """A backup code that has been redeemed; the unique pair makes redemption exactly-once"""

    __tablename__ = "used_backup_codes"

    id = Column(String(36), primary_key=True, default=new_id)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    code_hash = Column(String(64), nullable=False)
    used_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("account_id", "code_hash", name="uq_used_backup_codes_account_code"),
        Index("idx_used_backup_codes_account", "account_id"),
    )
