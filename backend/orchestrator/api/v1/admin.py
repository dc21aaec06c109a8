"""Admin routes - accounts, groups, memberships and the audit trail"""

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status, Request

from orchestrator.core.exceptions import NotFoundError, ValidationError
from orchestrator.models.group import DEFAULT_GROUP_ID, Role
from orchestrator.schemas.account import AccountCreate, AccountDetailResponse
from orchestrator.schemas.audit import AuditEventResponse
from orchestrator.schemas.group import (
    AddMemberRequest,
    GroupCreate,
    GroupDetailResponse,
    GroupResponse,
    GroupUpdate,
    UpdateMemberRequest,
)
from orchestrator.schemas.response import APIResponse
from orchestrator.services.audit_service import AuditService
from orchestrator.services.credential_store import CredentialStore
from orchestrator.services.rbac_service import GroupService
from orchestrator.services.totp_service import TotpService
from orchestrator.api.deps import (
    CurrentUser,
    client_ip,
    get_audit_service,
    get_credential_store,
    get_group_service,
    get_totp_service,
    require_group_role,
    require_system_admin,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---- Accounts ----

@router.get("/users", response_model=List[AccountDetailResponse])
def list_users(
    current_user: CurrentUser = Depends(require_system_admin),
    credentials: CredentialStore = Depends(get_credential_store),
    groups: GroupService = Depends(get_group_service),
):
    return [
        AccountDetailResponse(**account.model_dump(), groups=groups.get_user_groups(account.id))
        for account in credentials.list_accounts()
    ]


@router.post("/users", response_model=AccountDetailResponse, status_code=status.HTTP_201_CREATED)
def create_user(
    body: AccountCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_system_admin),
    credentials: CredentialStore = Depends(get_credential_store),
    groups: GroupService = Depends(get_group_service),
    audit: AuditService = Depends(get_audit_service),
):
    """
    Create an account

    New accounts join the default group as viewers. When a group and role
    are given the account is placed there instead.
    """
    if body.group_id and groups.get_group(body.group_id) is None:
        raise NotFoundError("Group", code="GROUP_NOT_FOUND")

    account_id = credentials.create_account(body.username, body.password)

    if body.group_id and body.group_id != DEFAULT_GROUP_ID:
        groups.add_user_to_group(account_id, body.group_id, body.role or Role.VIEWER)
        groups.remove_user_from_group(account_id, DEFAULT_GROUP_ID)
    elif body.role:
        groups.update_role(account_id, DEFAULT_GROUP_ID, body.role)

    audit.log_event(
        account_id=current_user.account_id,
        action="user_created",
        target_type="user",
        target_id=account_id,
        ip_address=client_ip(request),
        metadata={"username": body.username, "group_id": body.group_id or DEFAULT_GROUP_ID},
    )
    account = credentials.get_account(account_id)
    return AccountDetailResponse(**account.model_dump(), groups=groups.get_user_groups(account_id))


@router.delete("/users/{account_id}", response_model=APIResponse)
def delete_user(
    account_id: str,
    request: Request,
    current_user: CurrentUser = Depends(require_system_admin),
    credentials: CredentialStore = Depends(get_credential_store),
    audit: AuditService = Depends(get_audit_service),
):
    """Delete an account with its memberships and sessions"""
    if account_id == current_user.account_id:
        raise ValidationError("Cannot delete your own account", code="CANNOT_DELETE_SELF")

    if not credentials.delete_account(account_id):
        raise NotFoundError("User", code="USER_NOT_FOUND")

    audit.log_event(
        account_id=current_user.account_id,
        action="user_deleted",
        target_type="user",
        target_id=account_id,
        ip_address=client_ip(request),
    )
    return APIResponse(message="User deleted")


@router.post("/users/{account_id}/totp/reset", response_model=APIResponse)
def reset_user_totp(
    account_id: str,
    request: Request,
    current_user: CurrentUser = Depends(require_system_admin),
    totp: TotpService = Depends(get_totp_service),
    audit: AuditService = Depends(get_audit_service),
):
    """Clear another account's 2FA, e.g. after a lost device"""
    if account_id == current_user.account_id:
        raise ValidationError("Use /auth/totp/disable for your own account", code="CANNOT_RESET_SELF")

    if not totp.reset_totp_for_user(account_id):
        raise NotFoundError("User", code="USER_NOT_FOUND")

    audit.log_event(
        account_id=current_user.account_id,
        action="totp_reset",
        target_type="user",
        target_id=account_id,
        ip_address=client_ip(request),
    )
    return APIResponse(message="Two-factor authentication reset")


# ---- Groups ----

@router.get("/groups", response_model=List[GroupResponse])
def list_groups(
    current_user: CurrentUser = Depends(require_system_admin),
    groups: GroupService = Depends(get_group_service),
):
    return groups.list_groups()


@router.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
def create_group(
    body: GroupCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_system_admin),
    groups: GroupService = Depends(get_group_service),
    audit: AuditService = Depends(get_audit_service),
):
    group = groups.create_group(body.name, body.description, body.totp_required)
    audit.log_event(
        account_id=current_user.account_id,
        action="group_created",
        target_type="group",
        target_id=group.id,
        ip_address=client_ip(request),
        metadata={"name": group.name, "totp_required": group.totp_required},
    )
    return group


@router.get("/groups/{group_id}", response_model=GroupDetailResponse)
def get_group(
    group_id: str,
    current_user: CurrentUser = Depends(require_group_role(Role.VIEWER)),
    groups: GroupService = Depends(get_group_service),
):
    """Group with its members; visible to any member of the group"""
    group = groups.get_group(group_id)
    if group is None:
        raise NotFoundError("Group", code="GROUP_NOT_FOUND")
    return GroupDetailResponse(**group.model_dump(), members=groups.get_group_members(group_id))


@router.put("/groups/{group_id}", response_model=GroupResponse)
def update_group(
    group_id: str,
    body: GroupUpdate,
    request: Request,
    current_user: CurrentUser = Depends(require_system_admin),
    groups: GroupService = Depends(get_group_service),
    audit: AuditService = Depends(get_audit_service),
):
    group = groups.update_group(group_id, body.name, body.description, body.totp_required)
    if group is None:
        raise NotFoundError("Group", code="GROUP_NOT_FOUND")

    audit.log_event(
        account_id=current_user.account_id,
        action="group_updated",
        target_type="group",
        target_id=group_id,
        ip_address=client_ip(request),
        metadata=body.model_dump(exclude_none=True),
    )
    return group


@router.delete("/groups/{group_id}", response_model=APIResponse)
def delete_group(
    group_id: str,
    request: Request,
    current_user: CurrentUser = Depends(require_system_admin),
    groups: GroupService = Depends(get_group_service),
    audit: AuditService = Depends(get_audit_service),
):
    if not groups.delete_group(group_id):
        raise NotFoundError("Group", code="GROUP_NOT_FOUND")

    audit.log_event(
        account_id=current_user.account_id,
        action="group_deleted",
        target_type="group",
        target_id=group_id,
        ip_address=client_ip(request),
    )
    return APIResponse(message="Group deleted")


@router.post("/groups/{group_id}/members", response_model=APIResponse, status_code=status.HTTP_201_CREATED)
def add_group_member(
    group_id: str,
    body: AddMemberRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_system_admin),
    groups: GroupService = Depends(get_group_service),
    audit: AuditService = Depends(get_audit_service),
):
    groups.add_user_to_group(body.account_id, group_id, body.role)
    audit.log_event(
        account_id=current_user.account_id,
        action="group_member_added",
        target_type="group",
        target_id=group_id,
        ip_address=client_ip(request),
        metadata={"account_id": body.account_id, "role": body.role.value},
    )
    return APIResponse(message="Member added")


@router.put("/groups/{group_id}/members/{account_id}", response_model=APIResponse)
def update_group_member(
    group_id: str,
    account_id: str,
    body: UpdateMemberRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_system_admin),
    groups: GroupService = Depends(get_group_service),
    audit: AuditService = Depends(get_audit_service),
):
    if not groups.update_role(account_id, group_id, body.role):
        raise NotFoundError("Membership", code="MEMBERSHIP_NOT_FOUND")

    audit.log_event(
        account_id=current_user.account_id,
        action="group_member_updated",
        target_type="group",
        target_id=group_id,
        ip_address=client_ip(request),
        metadata={"account_id": account_id, "role": body.role.value},
    )
    return APIResponse(message="Member role updated")


@router.delete("/groups/{group_id}/members/{account_id}", response_model=APIResponse)
def remove_group_member(
    group_id: str,
    account_id: str,
    request: Request,
    current_user: CurrentUser = Depends(require_system_admin),
    groups: GroupService = Depends(get_group_service),
    audit: AuditService = Depends(get_audit_service),
):
    if not groups.remove_user_from_group(account_id, group_id):
        raise NotFoundError("Membership", code="MEMBERSHIP_NOT_FOUND")

    audit.log_event(
        account_id=current_user.account_id,
        action="group_member_removed",
        target_type="group",
        target_id=group_id,
        ip_address=client_ip(request),
        metadata={"account_id": account_id},
    )
    return APIResponse(message="Member removed")


# ---- Audit ----

@router.get("/audit-events", response_model=List[AuditEventResponse])
def list_audit_events(
    account_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
    current_user: CurrentUser = Depends(require_system_admin),
    audit: AuditService = Depends(get_audit_service),
):
    """List recent audit events, newest first"""
    rows = []
    for ev in audit.list_events(account_id=account_id, action=action, limit=limit):
        metadata = {}
        if ev.metadata_json:
            try:
                metadata = json.loads(ev.metadata_json)
            except json.JSONDecodeError:
                metadata = {"raw": ev.metadata_json}
        rows.append(
            AuditEventResponse(
                id=ev.id,
                account_id=ev.account_id,
                action=ev.action,
                target_type=ev.target_type,
                target_id=ev.target_id,
                ip_address=ev.ip_address,
                metadata=metadata,
                created_at=ev.created_at,
            )
        )
    return rows
