"""RBAC group and membership models"""

import enum

from sqlalchemy import Column, String, Boolean, DateTime, Text, ForeignKey, Index
from sqlalchemy.orm import relationship

from orchestrator.core.database import Base
from orchestrator.core.security import utcnow
from orchestrator.models.account import new_id

DEFAULT_GROUP_ID = "default"
DEFAULT_GROUP_NAME = "Default"


class Role(str, enum.Enum):
    """Membership role; lower rank is more privileged"""

    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def at_least(self, minimum: "Role") -> bool:
        return self.rank <= minimum.rank


_ROLE_RANK = {Role.ADMIN: 0, Role.OPERATOR: 1, Role.VIEWER: 2}


class Group(Base):
    """Named collection of accounts, optionally mandating two-factor auth"""

    __tablename__ = "groups"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    totp_required = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    memberships = relationship("Membership", back_populates="group", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Group(id={self.id}, name='{self.name}', totp_required={self.totp_required})>"


class Membership(Base):
    """Account role within one group"""

    __tablename__ = "user_groups"

    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True)
    group_id = Column(String(36), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True)
    role = Column(String(20), default=Role.VIEWER.value, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    account = relationship("Account", back_populates="memberships")
    group = relationship("Group", back_populates="memberships")

    __table_args__ = (
        Index("idx_user_groups_account", "account_id"),
        Index("idx_user_groups_group", "group_id"),
    )
