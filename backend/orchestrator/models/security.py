"""Security-related persistence models."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Index

from orchestrator.core.database import Base
from orchestrator.core.security import utcnow
from orchestrator.models.account import new_id


class RefreshToken(Base):
    """Refresh token record; the row is the session and its revocation point."""

    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=new_id)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False)
    # Shared by every rotation of one login; equals the id of the record that started it
    family_id = Column(String(36), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_used_at = Column(DateTime, default=utcnow, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    __table_args__ = (
        Index("idx_refresh_tokens_account_family", "account_id", "family_id"),
    )
