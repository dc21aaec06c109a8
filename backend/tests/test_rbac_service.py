import pytest

from orchestrator.core.exceptions import ConflictError, NotFoundError, PolicyViolationError
from orchestrator.models.group import DEFAULT_GROUP_ID, Role


def test_default_group_is_seeded(groups):
    group = groups.get_group(DEFAULT_GROUP_ID)
    assert group is not None
    assert group.totp_required is False
    assert groups.ensure_default_group().id == DEFAULT_GROUP_ID


def test_create_group_and_duplicate_name(groups):
    group = groups.create_group("ops", "Operators", totp_required=True)
    assert group.totp_required is True
    assert group.member_count == 0

    with pytest.raises(ConflictError) as exc:
        groups.create_group("ops")
    assert exc.value.code == "GROUP_EXISTS"


def test_default_group_is_protected(groups):
    with pytest.raises(PolicyViolationError) as exc:
        groups.delete_group(DEFAULT_GROUP_ID)
    assert exc.value.code == "CANNOT_DELETE_DEFAULT"

    with pytest.raises(PolicyViolationError):
        groups.update_group(DEFAULT_GROUP_ID, totp_required=True)

    renamed = groups.update_group(DEFAULT_GROUP_ID, description="everyone")
    assert renamed.description == "everyone"


def test_update_and_delete_group(groups, credentials):
    group = groups.create_group("ops")
    groups.create_group("dev")
    account_id = credentials.create_account("alice", "Secret123!")
    groups.add_user_to_group(account_id, group.id, Role.OPERATOR)

    with pytest.raises(ConflictError):
        groups.update_group(group.id, name="dev")

    updated = groups.update_group(group.id, name="operations", totp_required=True)
    assert updated.name == "operations"
    assert updated.totp_required is True
    assert updated.member_count == 1
    assert groups.update_group("missing", name="x") is None

    assert groups.delete_group(group.id) is True
    assert groups.get_group(group.id) is None
    assert [g.group_id for g in groups.get_user_groups(account_id)] == [DEFAULT_GROUP_ID]
    assert groups.delete_group(group.id) is False


def test_membership_upsert_remove_and_update(groups, credentials):
    group = groups.create_group("ops")
    account_id = credentials.create_account("alice", "Secret123!")

    groups.add_user_to_group(account_id, group.id, Role.VIEWER)
    groups.add_user_to_group(account_id, group.id, Role.ADMIN)
    members = groups.get_group_members(group.id)
    assert [(m.username, m.role) for m in members] == [("alice", Role.ADMIN)]

    assert groups.update_role(account_id, group.id, Role.OPERATOR) is True
    assert groups.get_group_members(group.id)[0].role == Role.OPERATOR
    assert groups.update_role(account_id, "missing", Role.ADMIN) is False

    assert groups.remove_user_from_group(account_id, group.id) is True
    assert groups.remove_user_from_group(account_id, group.id) is False
    assert groups.get_group_members(group.id) == []


def test_add_member_requires_existing_account_and_group(groups, credentials):
    account_id = credentials.create_account("alice", "Secret123!")
    with pytest.raises(NotFoundError) as exc:
        groups.add_user_to_group("missing", DEFAULT_GROUP_ID)
    assert exc.value.code == "USER_NOT_FOUND"

    with pytest.raises(NotFoundError) as exc:
        groups.add_user_to_group(account_id, "missing")
    assert exc.value.code == "GROUP_NOT_FOUND"


def test_highest_role_uses_most_privileged_membership(groups, credentials):
    ops = groups.create_group("ops")
    account_id = credentials.create_account("alice", "Secret123!")
    assert groups.get_user_highest_role(account_id) == Role.VIEWER

    groups.add_user_to_group(account_id, ops.id, Role.OPERATOR)
    assert groups.get_user_highest_role(account_id) == Role.OPERATOR
    assert groups.get_user_highest_role("missing") is None


def test_has_group_role_is_per_group(groups, credentials):
    ops = groups.create_group("ops")
    dev = groups.create_group("dev")
    account_id = credentials.create_account("alice", "Secret123!")
    groups.add_user_to_group(account_id, ops.id, Role.ADMIN)

    assert groups.has_group_role(account_id, ops.id, Role.OPERATOR)
    assert groups.has_group_role(account_id, DEFAULT_GROUP_ID, Role.VIEWER)
    assert not groups.has_group_role(account_id, DEFAULT_GROUP_ID, Role.OPERATOR)
    assert not groups.has_group_role(account_id, dev.id, Role.VIEWER)


def test_system_admin_bypasses_group_checks(groups, credentials):
    dev = groups.create_group("dev", totp_required=True)
    admin_id = credentials.create_account("root", "Secret123!", elevated=True)

    access = groups.resolve_access(admin_id)
    assert access.is_system_admin
    assert access.highest_role == Role.ADMIN
    assert groups.has_group_role(admin_id, dev.id, Role.ADMIN)
    # Not a member, so no group mandates 2FA for it
    assert groups.user_requires_totp(admin_id) is False


def test_mfa_gate_follows_membership(groups, credentials):
    secure = groups.create_group("secure", totp_required=True)
    account_id = credentials.create_account("alice", "Secret123!")
    assert groups.user_requires_totp(account_id) is False
    assert groups.can_user_disable_totp(account_id) is True

    groups.add_user_to_group(account_id, secure.id, Role.VIEWER)
    assert groups.user_requires_totp(account_id) is True
    assert groups.can_user_disable_totp(account_id) is False

    groups.remove_user_from_group(account_id, secure.id)
    assert groups.user_requires_totp(account_id) is False


def test_list_groups_counts_members(groups, credentials):
    ops = groups.create_group("ops")
    alice = credentials.create_account("alice", "Secret123!")
    credentials.create_account("bob", "Secret123!")
    groups.add_user_to_group(alice, ops.id)

    counts = {g.id: g.member_count for g in groups.list_groups()}
    assert counts[DEFAULT_GROUP_ID] == 2
    assert counts[ops.id] == 1
