"""Database models"""

from orchestrator.models.account import Account, UsedBackupCode
from orchestrator.models.group import Group, Membership, Role, DEFAULT_GROUP_ID
from orchestrator.models.security import RefreshToken
from orchestrator.models.audit import AuditEvent

__all__ = [
    "Account", "UsedBackupCode", "Group", "Membership", "Role", "DEFAULT_GROUP_ID",
    "RefreshToken", "AuditEvent",
]
