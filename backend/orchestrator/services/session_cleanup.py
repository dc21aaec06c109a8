"""Background sweep of expired refresh-token records."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orchestrator.core.security import utcnow
from orchestrator.models.security import RefreshToken
from orchestrator.services.audit_service import AuditService

logger = logging.getLogger(__name__)


def cleanup_expired_sessions(db: Session, now: Optional[datetime] = None) -> int:
    """Delete expired refresh tokens; returns how many were removed."""
    now = now or utcnow()
    deleted = (
        db.query(RefreshToken)
        .filter(RefreshToken.expires_at < now)
        .delete(synchronize_session=False)
    )
    if deleted:
        AuditService(db).log_event(
            account_id=None,
            action="sessions_cleanup",
            target_type="auth",
            metadata={"deleted_count": deleted},
            commit=False,
        )
        logger.info(f"Cleaned up {deleted} expired sessions")
    db.commit()
    return deleted


def count_expired_sessions(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    return (
        db.query(func.count(RefreshToken.id)).filter(RefreshToken.expires_at < now).scalar()
    ) or 0


class SessionCleanupJob:
    """Runs cleanup_expired_sessions once at start, then every interval."""

    def __init__(self, session_factory: Callable[[], Session], interval_seconds: float) -> None:
        self._session_factory = session_factory
        self._interval = interval_seconds
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._last_deleted = 0
        self._runs = 0

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running():
            logger.warning("Session cleanup job already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="session-cleanup", daemon=True)
        self._thread.start()
        logger.info(f"Session cleanup job started (interval {self._interval}s)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("Session cleanup job stopped")

    def status(self) -> dict:
        return {
            "running": self.is_running(),
            "runs": self._runs,
            "last_deleted": self._last_deleted,
        }

    def run_once(self) -> int:
        db = self._session_factory()
        try:
            self._last_deleted = cleanup_expired_sessions(db)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Failed to clean up expired sessions: {exc}")
            self._last_deleted = 0
        finally:
            db.close()
        self._runs += 1
        return self._last_deleted

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self._interval)
