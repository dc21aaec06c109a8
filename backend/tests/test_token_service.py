import threading

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from orchestrator.core.database import Base, _enable_sqlite_foreign_keys
from orchestrator.models.audit import AuditEvent
from orchestrator.models.security import RefreshToken
from orchestrator.services.credential_store import CredentialStore
from orchestrator.services.rbac_service import ensure_default_group
from orchestrator.services.token_service import SessionMetadata, TokenService


def _family_count(db, family_id):
    return db.query(RefreshToken).filter(RefreshToken.family_id == family_id).count()


def _account(credentials, username="alice", elevated=False):
    account_id = credentials.create_account(username, "Secret123!", elevated=elevated)
    return credentials.get_account(account_id)


def test_issue_tokens_persists_only_the_hash(db, credentials, tokens):
    account = _account(credentials)
    pair = tokens.issue_tokens(account, SessionMetadata(ip_address="10.0.0.1", user_agent="cli"))

    record = db.get(RefreshToken, pair.session_id)
    assert record.family_id == pair.session_id == pair.family_id
    assert record.token_hash == tokens.hash_token(pair.refresh_token)
    assert record.token_hash != pair.refresh_token
    assert record.ip_address == "10.0.0.1"
    assert record.user_agent == "cli"
    assert pair.expires_in == 15 * 60


def test_access_token_claims(credentials, tokens):
    viewer = _account(credentials)
    admin = _account(credentials, "root", elevated=True)

    claims = tokens.verify_access_token(tokens.issue_tokens(viewer).access_token)
    assert claims["sub"] == viewer.id
    assert claims["username"] == "alice"
    assert claims["is_system_admin"] is False
    assert claims["role"] == "viewer"

    admin_claims = tokens.verify_access_token(tokens.issue_tokens(admin).access_token)
    assert admin_claims["is_system_admin"] is True
    assert admin_claims["role"] == "admin"


def test_token_types_are_not_interchangeable(credentials, tokens):
    pair = tokens.issue_tokens(_account(credentials))
    assert tokens.verify_access_token(pair.refresh_token) is None
    assert tokens.rotate_refresh_token(pair.access_token) is None
    assert tokens.rotate_refresh_token("garbage") is None


def test_rotation_chain_keeps_family(db, credentials, tokens):
    pair = tokens.issue_tokens(_account(credentials))
    family_id = pair.family_id
    hashes = set()

    for _ in range(3):
        pair = tokens.rotate_refresh_token(pair.refresh_token)
        assert pair is not None
        assert pair.family_id == family_id
        hashes.add(tokens.hash_token(pair.refresh_token))

    assert len(hashes) == 3
    # Each rotation consumed its predecessor
    assert _family_count(db, family_id) == 1

    assert tokens.revoke_family(family_id) == 1
    assert _family_count(db, family_id) == 0
    assert tokens.rotate_refresh_token(pair.refresh_token) is None


def test_reusing_a_rotated_token_revokes_the_family(db, credentials, tokens, registry):
    account = _account(credentials)
    other = tokens.issue_tokens(account)
    first = tokens.issue_tokens(account, SessionMetadata(ip_address="10.0.0.1"))
    second = tokens.rotate_refresh_token(first.refresh_token)
    assert second is not None

    replay = tokens.rotate_refresh_token(first.refresh_token, SessionMetadata(ip_address="6.6.6.6"))

    assert replay is None
    assert _family_count(db, first.family_id) == 0
    assert tokens.rotate_refresh_token(second.refresh_token) is None
    # Unrelated sessions survive
    assert [s.family_id for s in registry.list_sessions(account.id)] == [other.family_id]

    events = db.query(AuditEvent).filter(AuditEvent.action == "refresh_token_reuse").all()
    assert len(events) == 1
    assert events[0].target_id == first.family_id
    assert events[0].ip_address == "6.6.6.6"


def test_unknown_token_without_live_family_is_quiet(db, credentials, tokens):
    pair = tokens.issue_tokens(_account(credentials))
    assert tokens.revoke_refresh_token(pair.refresh_token) is True

    assert tokens.rotate_refresh_token(pair.refresh_token) is None
    assert db.query(AuditEvent).filter(AuditEvent.action == "refresh_token_reuse").count() == 0


def test_expired_refresh_record_is_rejected_and_removed(db, credentials, tokens, clock):
    pair = tokens.issue_tokens(_account(credentials))
    clock.advance(days=8)

    assert tokens.rotate_refresh_token(pair.refresh_token) is None
    assert db.get(RefreshToken, pair.session_id) is None


def test_rotation_merges_session_metadata(db, credentials, tokens):
    pair = tokens.issue_tokens(_account(credentials), SessionMetadata(ip_address="10.0.0.1", user_agent="firefox"))
    rotated = tokens.rotate_refresh_token(pair.refresh_token, SessionMetadata(ip_address="10.0.0.2", user_agent="curl"))

    record = db.get(RefreshToken, rotated.session_id)
    assert record.ip_address == "10.0.0.2"
    assert record.user_agent == "firefox"


def test_retention_keeps_five_most_recent_families(db, credentials, tokens):
    account = _account(credentials)
    pairs = [tokens.issue_tokens(account) for _ in range(6)]

    families = {
        family_id
        for (family_id,) in db.query(RefreshToken.family_id).filter(RefreshToken.account_id == account.id)
    }
    assert len(families) == 5
    assert pairs[0].family_id not in families
    assert tokens.rotate_refresh_token(pairs[0].refresh_token) is None


def test_retention_counts_recent_rotation_as_activity(db, credentials, tokens):
    account = _account(credentials)
    oldest = tokens.issue_tokens(account)
    for _ in range(4):
        tokens.issue_tokens(account)

    # Rotating the oldest login makes its family the newest
    rotated = tokens.rotate_refresh_token(oldest.refresh_token)
    newest = tokens.issue_tokens(account)

    assert _family_count(db, rotated.family_id) == 1
    assert _family_count(db, newest.family_id) == 1
    assert db.query(RefreshToken).filter(RefreshToken.account_id == account.id).count() == 5


def test_revoke_refresh_and_all(db, credentials, tokens):
    account = _account(credentials)
    pair = tokens.issue_tokens(account)
    tokens.issue_tokens(account)

    assert tokens.revoke_refresh_token(pair.refresh_token) is True
    assert tokens.revoke_refresh_token(pair.refresh_token) is False
    assert tokens.revoke_all_for_account(account.id) == 1
    assert db.query(RefreshToken).count() == 0


def test_alice_end_to_end(db, credentials, tokens):
    credentials.create_account("alice", "Secret123!")
    alice = credentials.validate_credentials("alice", "Secret123!")
    assert alice is not None

    pair = tokens.issue_tokens(alice)
    assert pair.access_token and pair.refresh_token

    rotated = tokens.rotate_refresh_token(pair.refresh_token)
    assert rotated is not None
    assert rotated.family_id == pair.family_id

    assert tokens.rotate_refresh_token(pair.refresh_token) is None
    assert (
        db.query(RefreshToken)
        .filter(RefreshToken.account_id == alice.id, RefreshToken.family_id == pair.family_id)
        .count()
    ) == 0


def test_concurrent_rotation_of_one_token_revokes_the_family(tmp_path):
    """
    Two clients racing to rotate the same valid token: one wins, the loser
    looks exactly like a replay, and the winner's new session is revoked
    along with the rest of the family.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'auth.sqlite'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    setup_db = SessionLocal()
    try:
        ensure_default_group(setup_db)
        setup_db.commit()
        store = CredentialStore(setup_db)
        account = store.get_account(store.create_account("alice", "Secret123!"))
        pair = TokenService(setup_db).issue_tokens(account)
    finally:
        setup_db.close()

    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def rotate():
        db = SessionLocal()
        try:
            barrier.wait()
            rotated = TokenService(db).rotate_refresh_token(pair.refresh_token)
            with lock:
                results.append(rotated)
        finally:
            db.close()

    threads = [threading.Thread(target=rotate) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [r for r in results if r is not None]
    assert len(results) == 2
    assert len(winners) == 1

    check_db = SessionLocal()
    try:
        assert _family_count(check_db, pair.family_id) == 0
        assert TokenService(check_db).rotate_refresh_token(winners[0].refresh_token) is None
    finally:
        check_db.close()
        engine.dispose()
