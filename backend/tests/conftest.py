from __future__ import annotations

import os
import tempfile
from datetime import timedelta

# Set test environment BEFORE importing orchestrator modules.
# orchestrator.core.database builds its engine at import time from settings,
# so the env vars must be in place before any orchestrator import.
_test_tmp = tempfile.mkdtemp(prefix="orchestrator-test-")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SECRET_KEY", "test-jwt-secret-for-orchestrator-auth-tests-only")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DB_INIT_MODE", "off")
os.environ.setdefault("LOG_FILE", os.path.join(_test_tmp, "orchestrator.log"))

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from orchestrator.config import Settings
from orchestrator.core.database import Base, _enable_sqlite_foreign_keys
from orchestrator.core.security import utcnow
from orchestrator.services.credential_store import CredentialStore
from orchestrator.services.rbac_service import GroupService, ensure_default_group
from orchestrator.services.session_registry import SessionRegistry
from orchestrator.services.token_service import TokenService
from orchestrator.services.totp_service import TotpService


class StepClock:
    """Deterministic clock; every reading moves one second forward."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.current = start or utcnow()
        self.step = step

    def __call__(self):
        value = self.current
        self.current = self.current + self.step
        return value

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite shared by every connection, with foreign keys enforced."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(name="db")
def db_fixture(session_factory):
    db = session_factory()
    ensure_default_group(db)
    db.commit()
    try:
        yield db
    finally:
        db.close()


# ── Service fixtures ──────────────────────────────────────────────────


@pytest.fixture(name="app_settings")
def app_settings_fixture():
    return Settings()


@pytest.fixture(name="clock")
def clock_fixture():
    return StepClock()


@pytest.fixture(name="credentials")
def credentials_fixture(db, app_settings, clock):
    return CredentialStore(db, app_settings, clock)


@pytest.fixture(name="groups")
def groups_fixture(db, app_settings, clock):
    return GroupService(db, app_settings, clock)


@pytest.fixture(name="tokens")
def tokens_fixture(db, app_settings, clock):
    return TokenService(db, app_settings, clock)


@pytest.fixture(name="totp")
def totp_fixture(db, app_settings, clock):
    return TotpService(db, app_settings, clock)


@pytest.fixture(name="registry")
def registry_fixture(db, clock):
    return SessionRegistry(db, clock)
