"""Database configuration and session management"""

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator, Optional
from orchestrator.config import Settings, settings
import logging

logger = logging.getLogger(__name__)

# Create base class for models
Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores ON DELETE clauses unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create an engine for the configured store.

    SQLite gets a thread-shareable connection; server databases get a
    sized, pre-pinged pool.
    """
    url = url or settings.get_database_url()
    if url.startswith("sqlite"):
        sqlite_engine = create_engine(url, connect_args={"check_same_thread": False}, echo=echo)
        event.listen(sqlite_engine, "connect", _enable_sqlite_foreign_keys)
        return sqlite_engine
    return create_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
        echo=echo,
    )


engine = build_engine(echo=settings.DEBUG)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Import models after Base is defined so metadata is populated.
from orchestrator import models  # noqa: E402,F401


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session

    Yields:
        Session: Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Optional[Engine] = None, config: Optional[Settings] = None) -> None:
    """
    Initialize database according to configured strategy.

    DB_INIT_MODE:
      - migrate: require alembic_version table (migration-first discipline)
      - create_all: create missing tables, for local/dev bootstrap
      - off: skip initialization check
    """
    bind = bind or engine
    config = config or settings
    mode = config.DB_INIT_MODE.lower().strip()
    if mode == "off":
        logger.info("DB initialization check skipped (DB_INIT_MODE=off)")
        return

    if mode == "create_all":
        if bind.dialect.name == "sqlite" and bind.url.database:
            from pathlib import Path
            Path(bind.url.database).parent.mkdir(parents=True, exist_ok=True)
        Base.metadata.create_all(bind=bind)
        logger.info("Database tables ensured with create_all")
        return

    if mode == "migrate":
        with bind.connect() as conn:
            exists = "alembic_version" in inspect(conn).get_table_names()
        if not exists:
            raise RuntimeError(
                "Migration table missing. Run `alembic upgrade head` before starting the API."
            )
        logger.info("Migration metadata detected.")
        return

    raise RuntimeError(f"Unknown DB_INIT_MODE: {config.DB_INIT_MODE}")
