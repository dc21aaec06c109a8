"""Session registry - operator-facing views over refresh-token records"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from orchestrator.core.security import hash_token, utcnow
from orchestrator.models.security import RefreshToken
from orchestrator.schemas.session import SessionInfo


class SessionRegistry:
    """List and revoke the live sessions of an account."""

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db = db
        self.clock = clock or utcnow

    def list_sessions(self, account_id: str, current_token_hash: Optional[str] = None) -> List[SessionInfo]:
        records = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.account_id == account_id, RefreshToken.expires_at > self.clock())
            .order_by(RefreshToken.last_used_at.desc())
            .all()
        )
        return [
            SessionInfo(
                id=record.id,
                family_id=record.family_id,
                ip_address=record.ip_address,
                user_agent=record.user_agent,
                created_at=record.created_at,
                last_used_at=record.last_used_at,
                expires_at=record.expires_at,
                is_current=bool(current_token_hash) and record.token_hash == current_token_hash,
            )
            for record in records
        ]

    def revoke_session(self, account_id: str, session_id: str) -> bool:
        """Delete one session; scoped to its owner so ids of other accounts do nothing"""
        deleted = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.id == session_id, RefreshToken.account_id == account_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted > 0

    def revoke_other_sessions(self, account_id: str, current_token_hash: str) -> int:
        deleted = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.account_id == account_id, RefreshToken.token_hash != current_token_hash)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    def revoke_all_sessions(self, account_id: str) -> int:
        deleted = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.account_id == account_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    def session_id_for_token(self, refresh_token: str) -> Optional[str]:
        return (
            self.db.query(RefreshToken.id)
            .filter(RefreshToken.token_hash == hash_token(refresh_token))
            .scalar()
        )

    def count_active_sessions(self, account_id: Optional[str] = None) -> int:
        query = self.db.query(func.count(RefreshToken.id)).filter(RefreshToken.expires_at > self.clock())
        if account_id:
            query = query.filter(RefreshToken.account_id == account_id)
        return query.scalar() or 0

    @staticmethod
    def token_hash(refresh_token: str) -> str:
        return hash_token(refresh_token)
