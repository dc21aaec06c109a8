from types import SimpleNamespace

import pytest

from orchestrator.api import deps
from orchestrator.api.v1 import admin as admin_routes
from orchestrator.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from orchestrator.models.group import DEFAULT_GROUP_ID, Role
from orchestrator.schemas.account import AccountCreate
from orchestrator.schemas.group import AddMemberRequest, GroupCreate, GroupUpdate, UpdateMemberRequest
from orchestrator.services.audit_service import AuditService


@pytest.fixture(name="audit")
def audit_fixture(db):
    return AuditService(db)


@pytest.fixture(name="request_stub")
def request_stub_fixture():
    return SimpleNamespace(client=SimpleNamespace(host="127.0.0.1"), headers={})


@pytest.fixture(name="admin_user")
def admin_user_fixture(credentials):
    account_id = credentials.create_account("root", "Secret123!", elevated=True)
    return deps.CurrentUser(account_id=account_id, username="root", is_system_admin=True, role="admin")


def test_create_user_in_group_replaces_default_membership(request_stub, admin_user, credentials, groups, audit):
    ops = groups.create_group("ops")

    created = admin_routes.create_user(
        AccountCreate(username="alice", password="Secret123!", group_id=ops.id, role=Role.OPERATOR),
        request=request_stub,
        current_user=admin_user,
        credentials=credentials,
        groups=groups,
        audit=audit,
    )

    assert [(g.group_id, g.role) for g in created.groups] == [(ops.id, Role.OPERATOR)]
    events = audit.list_events(action="user_created")
    assert events[0].target_id == created.id


def test_create_user_with_role_in_default_group(request_stub, admin_user, credentials, groups, audit):
    created = admin_routes.create_user(
        AccountCreate(username="alice", password="Secret123!", role=Role.ADMIN),
        request=request_stub,
        current_user=admin_user,
        credentials=credentials,
        groups=groups,
        audit=audit,
    )
    assert [(g.group_id, g.role) for g in created.groups] == [(DEFAULT_GROUP_ID, Role.ADMIN)]


def test_create_user_unknown_group(request_stub, admin_user, credentials, groups, audit):
    with pytest.raises(NotFoundError):
        admin_routes.create_user(
            AccountCreate(username="alice", password="Secret123!", group_id="missing"),
            request=request_stub,
            current_user=admin_user,
            credentials=credentials,
            groups=groups,
            audit=audit,
        )
    assert credentials.get_account_by_username("alice") is None


def test_admin_cannot_target_self(request_stub, admin_user, credentials, totp, audit):
    with pytest.raises(ValidationError) as exc:
        admin_routes.delete_user(
            admin_user.account_id, request=request_stub, current_user=admin_user, credentials=credentials, audit=audit
        )
    assert exc.value.code == "CANNOT_DELETE_SELF"

    with pytest.raises(ValidationError) as exc:
        admin_routes.reset_user_totp(
            admin_user.account_id, request=request_stub, current_user=admin_user, totp=totp, audit=audit
        )
    assert exc.value.code == "CANNOT_RESET_SELF"


def test_delete_and_reset_other_users(request_stub, admin_user, credentials, totp, audit):
    alice = credentials.create_account("alice", "Secret123!")

    admin_routes.reset_user_totp(alice, request=request_stub, current_user=admin_user, totp=totp, audit=audit)
    admin_routes.delete_user(alice, request=request_stub, current_user=admin_user, credentials=credentials, audit=audit)
    assert credentials.get_account(alice) is None

    with pytest.raises(NotFoundError):
        admin_routes.delete_user(alice, request=request_stub, current_user=admin_user, credentials=credentials, audit=audit)


def test_group_crud_and_members(request_stub, admin_user, credentials, groups, audit):
    alice = credentials.create_account("alice", "Secret123!")
    group = admin_routes.create_group(
        GroupCreate(name="ops", totp_required=True),
        request=request_stub,
        current_user=admin_user,
        groups=groups,
        audit=audit,
    )

    admin_routes.add_group_member(
        group.id,
        AddMemberRequest(account_id=alice, role=Role.VIEWER),
        request=request_stub,
        current_user=admin_user,
        groups=groups,
        audit=audit,
    )
    admin_routes.update_group_member(
        group.id,
        alice,
        UpdateMemberRequest(role=Role.ADMIN),
        request=request_stub,
        current_user=admin_user,
        groups=groups,
        audit=audit,
    )
    detail = admin_routes.get_group(group.id, current_user=admin_user, groups=groups)
    assert [(m.username, m.role) for m in detail.members] == [("alice", Role.ADMIN)]

    updated = admin_routes.update_group(
        group.id,
        GroupUpdate(totp_required=False),
        request=request_stub,
        current_user=admin_user,
        groups=groups,
        audit=audit,
    )
    assert updated.totp_required is False

    admin_routes.remove_group_member(
        group.id, alice, request=request_stub, current_user=admin_user, groups=groups, audit=audit
    )
    with pytest.raises(NotFoundError) as exc:
        admin_routes.remove_group_member(
            group.id, alice, request=request_stub, current_user=admin_user, groups=groups, audit=audit
        )
    assert exc.value.code == "MEMBERSHIP_NOT_FOUND"

    admin_routes.delete_group(group.id, request=request_stub, current_user=admin_user, groups=groups, audit=audit)
    assert [g.id for g in admin_routes.list_groups(current_user=admin_user, groups=groups)] == [DEFAULT_GROUP_ID]


def test_default_group_cannot_be_deleted(request_stub, admin_user, groups, audit):
    with pytest.raises(PolicyViolationError):
        admin_routes.delete_group(
            DEFAULT_GROUP_ID, request=request_stub, current_user=admin_user, groups=groups, audit=audit
        )


def test_group_detail_requires_membership(credentials, groups):
    ops = groups.create_group("ops")
    alice = credentials.create_account("alice", "Secret123!")
    bob = credentials.create_account("bob", "Secret123!")
    groups.add_user_to_group(alice, ops.id, Role.VIEWER)

    check = deps.require_group_role(Role.VIEWER)
    as_alice = deps.CurrentUser(account_id=alice, username="alice", is_system_admin=False)
    as_bob = deps.CurrentUser(account_id=bob, username="bob", is_system_admin=False)

    assert check(ops.id, current_user=as_alice, groups=groups) is as_alice
    with pytest.raises(AuthorizationError):
        check(ops.id, current_user=as_bob, groups=groups)
    with pytest.raises(AuthorizationError):
        deps.require_group_role(Role.OPERATOR)(ops.id, current_user=as_alice, groups=groups)


def test_list_users_and_audit_events(request_stub, admin_user, credentials, groups, audit):
    credentials.create_account("alice", "Secret123!")
    audit.log_event(account_id=admin_user.account_id, action="custom", metadata={"k": "v"})

    users = admin_routes.list_users(current_user=admin_user, credentials=credentials, groups=groups)
    assert [u.username for u in users] == ["root", "alice"]
    assert users[0].groups == []

    events = admin_routes.list_audit_events(
        account_id=None, action="custom", limit=10, current_user=admin_user, audit=audit
    )
    assert len(events) == 1
    assert events[0].metadata == {"k": "v"}
