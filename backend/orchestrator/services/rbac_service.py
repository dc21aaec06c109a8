"""RBAC group engine - groups, memberships, role resolution and MFA policy"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orchestrator.config import Settings, settings as default_settings
from orchestrator.core.exceptions import ConflictError, NotFoundError, PolicyViolationError
from orchestrator.core.security import utcnow
from orchestrator.models.account import Account, new_id
from orchestrator.models.group import DEFAULT_GROUP_ID, DEFAULT_GROUP_NAME, Group, Membership, Role
from orchestrator.schemas.account import GroupMembershipInfo
from orchestrator.schemas.group import GroupMemberResponse, GroupResponse

logger = logging.getLogger(__name__)


def ensure_default_group(db: Session, now: Optional[datetime] = None) -> Group:
    """
    Make sure the protected default group exists.

    Adds it to the session without committing; the caller's transaction
    decides when it lands.
    """
    group = db.get(Group, DEFAULT_GROUP_ID)
    if group is None:
        now = now or utcnow()
        group = Group(
            id=DEFAULT_GROUP_ID,
            name=DEFAULT_GROUP_NAME,
            description="Default group for all users and apps",
            totp_required=False,
            created_at=now,
            updated_at=now,
        )
        db.add(group)
        db.flush()
    return group


@dataclass
class AccessContext:
    """
    Resolved authorization state of one account.

    The only place where system admins short-circuit group checks.
    """

    account_id: str
    is_system_admin: bool
    roles: Dict[str, Role] = field(default_factory=dict)
    mfa_groups: List[str] = field(default_factory=list)

    @property
    def requires_totp(self) -> bool:
        return bool(self.mfa_groups)

    @property
    def highest_role(self) -> Optional[Role]:
        if self.is_system_admin:
            return Role.ADMIN
        if not self.roles:
            return None
        return min(self.roles.values(), key=lambda role: role.rank)

    def role_in(self, group_id: str) -> Optional[Role]:
        if self.is_system_admin:
            return Role.ADMIN
        return self.roles.get(group_id)

    def has_role(self, group_id: str, minimum: Role) -> bool:
        role = self.role_in(group_id)
        return role is not None and role.at_least(minimum)


class GroupService:
    """Groups, memberships and the MFA-mandate policy"""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.settings = settings or default_settings
        self.clock = clock or utcnow

    # Groups

    def ensure_default_group(self) -> GroupResponse:
        group = ensure_default_group(self.db, self.clock())
        self.db.commit()
        return self._to_response(group)

    def create_group(
        self,
        name: str,
        description: Optional[str] = None,
        totp_required: bool = False,
    ) -> GroupResponse:
        """
        Create a group

        Raises:
            ConflictError: If the name is taken
        """
        if self.db.query(Group.id).filter(Group.name == name).first():
            raise ConflictError("Group name already exists", code="GROUP_EXISTS")

        now = self.clock()
        group = Group(
            id=new_id(),
            name=name,
            description=description,
            totp_required=totp_required,
            created_at=now,
            updated_at=now,
        )
        self.db.add(group)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Group name already exists", code="GROUP_EXISTS")

        logger.info(f"Created group: {name} (totp_required: {totp_required})")
        return self._to_response(group)

    def get_group(self, group_id: str) -> Optional[GroupResponse]:
        group = self.db.get(Group, group_id)
        return self._to_response(group) if group else None

    def list_groups(self) -> List[GroupResponse]:
        counts = dict(
            self.db.query(Membership.group_id, func.count(Membership.account_id))
            .group_by(Membership.group_id)
            .all()
        )
        groups = self.db.query(Group).order_by(Group.created_at, Group.name).all()
        return [self._to_response(group, counts.get(group.id, 0)) for group in groups]

    def update_group(
        self,
        group_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        totp_required: Optional[bool] = None,
    ) -> Optional[GroupResponse]:
        """
        Update a group; returns None if it does not exist

        Raises:
            PolicyViolationError: If asked to require 2FA on the default group
            ConflictError: If the new name is taken
        """
        group = self.db.get(Group, group_id)
        if group is None:
            return None

        if group.id == DEFAULT_GROUP_ID and totp_required:
            raise PolicyViolationError(
                "The default group cannot require two-factor authentication",
                code="DEFAULT_GROUP_TOTP",
            )

        if name is not None and name != group.name:
            if self.db.query(Group.id).filter(Group.name == name).first():
                raise ConflictError("Group name already exists", code="GROUP_EXISTS")
            group.name = name
        if description is not None:
            group.description = description
        if totp_required is not None:
            group.totp_required = totp_required
        group.updated_at = self.clock()

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Group name already exists", code="GROUP_EXISTS")
        return self._to_response(group)

    def delete_group(self, group_id: str) -> bool:
        """
        Delete a group and its memberships

        Raises:
            PolicyViolationError: For the default group
        """
        if group_id == DEFAULT_GROUP_ID:
            raise PolicyViolationError("Cannot delete the default group", code="CANNOT_DELETE_DEFAULT")

        group = self.db.get(Group, group_id)
        if group is None:
            return False
        name = group.name
        self.db.delete(group)
        self.db.commit()
        logger.info(f"Deleted group: {name}")
        return True

    def get_group_members(self, group_id: str) -> List[GroupMemberResponse]:
        rows = (
            self.db.query(Membership, Account.username)
            .join(Account, Account.id == Membership.account_id)
            .filter(Membership.group_id == group_id)
            .order_by(Account.username)
            .all()
        )
        return [
            GroupMemberResponse(
                account_id=membership.account_id,
                username=username,
                role=Role(membership.role),
                created_at=membership.created_at,
            )
            for membership, username in rows
        ]

    # Memberships

    def add_user_to_group(self, account_id: str, group_id: str, role: Role = Role.VIEWER) -> None:
        """
        Add a membership, or change the role of an existing one

        Raises:
            NotFoundError: If the account or the group does not exist
        """
        role = Role(role)
        if self.db.get(Account, account_id) is None:
            raise NotFoundError("User", code="USER_NOT_FOUND")
        if self.db.get(Group, group_id) is None:
            raise NotFoundError("Group", code="GROUP_NOT_FOUND")

        membership = self.db.get(Membership, (account_id, group_id))
        if membership is None:
            self.db.add(Membership(
                account_id=account_id,
                group_id=group_id,
                role=role.value,
                created_at=self.clock(),
            ))
        else:
            membership.role = role.value
        self.db.commit()

    def remove_user_from_group(self, account_id: str, group_id: str) -> bool:
        deleted = (
            self.db.query(Membership)
            .filter(Membership.account_id == account_id, Membership.group_id == group_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted > 0

    def update_role(self, account_id: str, group_id: str, role: Role) -> bool:
        membership = self.db.get(Membership, (account_id, group_id))
        if membership is None:
            return False
        membership.role = Role(role).value
        self.db.commit()
        return True

    def get_user_groups(self, account_id: str) -> List[GroupMembershipInfo]:
        rows = (
            self.db.query(Membership.role, Group)
            .join(Group, Group.id == Membership.group_id)
            .filter(Membership.account_id == account_id)
            .order_by(Group.name)
            .all()
        )
        return [
            GroupMembershipInfo(
                group_id=group.id,
                group_name=group.name,
                role=Role(role),
                totp_required=group.totp_required,
            )
            for role, group in rows
        ]

    # Authorization resolution

    def resolve_access(self, account_id: str) -> Optional[AccessContext]:
        """Resolve an account's roles and MFA obligations; None if the account is gone"""
        is_system_admin = (
            self.db.query(Account.is_system_admin).filter(Account.id == account_id).scalar()
        )
        if is_system_admin is None:
            return None

        rows = (
            self.db.query(Membership.group_id, Membership.role, Group.totp_required)
            .join(Group, Group.id == Membership.group_id)
            .filter(Membership.account_id == account_id)
            .all()
        )
        return AccessContext(
            account_id=account_id,
            is_system_admin=bool(is_system_admin),
            roles={group_id: Role(role) for group_id, role, _ in rows},
            mfa_groups=[group_id for group_id, _, required in rows if required],
        )

    def user_requires_totp(self, account_id: str) -> bool:
        context = self.resolve_access(account_id)
        return context is not None and context.requires_totp

    def can_user_disable_totp(self, account_id: str) -> bool:
        return not self.user_requires_totp(account_id)

    def get_user_highest_role(self, account_id: str) -> Optional[Role]:
        """Coarse display role; per-action checks use has_group_role"""
        context = self.resolve_access(account_id)
        return context.highest_role if context else None

    def has_group_role(self, account_id: str, group_id: str, minimum: Role) -> bool:
        context = self.resolve_access(account_id)
        return context is not None and context.has_role(group_id, Role(minimum))

    def _to_response(self, group: Group, member_count: Optional[int] = None) -> GroupResponse:
        if member_count is None:
            member_count = (
                self.db.query(func.count(Membership.account_id))
                .filter(Membership.group_id == group.id)
                .scalar()
            ) or 0
        return GroupResponse(
            id=group.id,
            name=group.name,
            description=group.description,
            totp_required=group.totp_required,
            member_count=member_count,
            created_at=group.created_at,
            updated_at=group.updated_at,
        )
