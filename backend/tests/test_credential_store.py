import pytest

from orchestrator.core.exceptions import ConflictError, ValidationError
from orchestrator.core import security
from orchestrator.models.account import Account
from orchestrator.models.group import DEFAULT_GROUP_ID, Membership, Role
from orchestrator.models.security import RefreshToken
from orchestrator.services.token_service import SessionMetadata


def test_create_account_joins_default_group_as_viewer(db, credentials):
    account_id = credentials.create_account("alice", "Secret123!")

    membership = db.get(Membership, (account_id, DEFAULT_GROUP_ID))
    assert membership is not None
    assert membership.role == Role.VIEWER.value

    account = db.get(Account, account_id)
    assert account.password_hash != "Secret123!"
    assert account.totp_enabled is False


def test_system_admin_has_no_membership(db, credentials):
    account_id = credentials.create_account("root", "Secret123!", elevated=True)
    assert db.query(Membership).filter(Membership.account_id == account_id).count() == 0
    assert credentials.get_account(account_id).is_system_admin is True


def test_duplicate_username_is_conflict(credentials):
    credentials.create_account("alice", "Secret123!")
    with pytest.raises(ConflictError) as exc:
        credentials.create_account("alice", "Other456!")
    assert exc.value.code == "USERNAME_EXISTS"


def test_usernames_are_case_sensitive(credentials):
    credentials.create_account("alice", "Secret123!")
    credentials.create_account("Alice", "Secret123!")
    assert credentials.count_accounts() == 2


def test_password_over_bcrypt_limit_is_rejected(credentials):
    with pytest.raises(ValidationError) as exc:
        credentials.create_account("alice", "x" * 73)
    assert exc.value.code == "PASSWORD_TOO_LONG"


def test_validate_credentials(credentials):
    account_id = credentials.create_account("alice", "Secret123!")

    account = credentials.validate_credentials("alice", "Secret123!")
    assert account is not None
    assert account.id == account_id
    assert account.last_login_at is not None

    assert credentials.validate_credentials("alice", "wrong") is None
    assert credentials.validate_credentials("nobody", "Secret123!") is None


def test_unknown_username_still_runs_a_bcrypt_check(credentials, monkeypatch):
    calls = []
    real_verify = security.verify_password

    def counting_verify(password, hashed):
        calls.append(hashed)
        return real_verify(password, hashed)

    monkeypatch.setattr("orchestrator.services.credential_store.verify_password", counting_verify)
    assert credentials.validate_credentials("ghost", "whatever") is None
    assert len(calls) == 1
    assert calls[0].startswith("$2")


def test_change_password_revokes_every_session(db, credentials, tokens):
    account_id = credentials.create_account("alice", "Secret123!")
    account = credentials.get_account(account_id)
    tokens.issue_tokens(account, SessionMetadata(ip_address="10.0.0.1"))
    tokens.issue_tokens(account, SessionMetadata(ip_address="10.0.0.2"))
    assert db.query(RefreshToken).filter(RefreshToken.account_id == account_id).count() == 2

    assert credentials.change_password(account_id, "wrong", "NewSecret456!") is False
    assert db.query(RefreshToken).filter(RefreshToken.account_id == account_id).count() == 2

    assert credentials.change_password(account_id, "Secret123!", "NewSecret456!") is True
    assert db.query(RefreshToken).filter(RefreshToken.account_id == account_id).count() == 0
    assert credentials.validate_credentials("alice", "Secret123!") is None
    assert credentials.validate_credentials("alice", "NewSecret456!") is not None


def test_change_password_unknown_account(credentials):
    assert credentials.change_password("missing", "a", "NewSecret456!") is False


def test_delete_account_cascades(db, credentials, tokens):
    account_id = credentials.create_account("alice", "Secret123!")
    tokens.issue_tokens(credentials.get_account(account_id))

    assert credentials.delete_account(account_id) is True
    assert credentials.get_account(account_id) is None
    assert db.query(Membership).filter(Membership.account_id == account_id).count() == 0
    assert db.query(RefreshToken).filter(RefreshToken.account_id == account_id).count() == 0
    assert credentials.delete_account(account_id) is False


def test_list_and_lookup(credentials):
    credentials.create_account("alice", "Secret123!")
    credentials.create_account("bob", "Secret123!")
    assert [a.username for a in credentials.list_accounts()] == ["alice", "bob"]
    assert credentials.get_account_by_username("bob").username == "bob"
    assert credentials.get_account_by_username("carol") is None


def test_initial_admin_only_in_development(db, app_settings, clock):
    from orchestrator.services.credential_store import CredentialStore

    store = CredentialStore(db, app_settings, clock)
    assert store.ensure_initial_admin() is None
    assert store.count_accounts() == 0

    app_settings.ENVIRONMENT = "development"
    account_id = store.ensure_initial_admin()
    assert account_id is not None
    assert store.get_account(account_id).is_system_admin is True
    assert store.ensure_initial_admin() is None
