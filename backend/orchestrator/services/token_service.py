"""Refresh token rotation and revocation service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from orchestrator.config import Settings, settings as default_settings
from orchestrator.core.metrics import REFRESH_THEFT_DETECTED
from orchestrator.core.security import (
    REFRESH_TOKEN_TYPE,
    create_access_token,
    create_refresh_token,
    decode_access_token,
    decode_token,
    hash_token,
    utcnow,
)
from orchestrator.models.account import Account, new_id
from orchestrator.models.security import RefreshToken
from orchestrator.services.audit_service import AuditService
from orchestrator.services.rbac_service import GroupService

logger = logging.getLogger(__name__)


@dataclass
class SessionMetadata:
    """Client details recorded on a refresh-token record"""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    family_id: str
    session_id: str


class TokenService:
    """Mint token pairs and manage the refresh-token family lifecycle."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.settings = settings or default_settings
        self.clock = clock or utcnow
        self.groups = GroupService(db, self.settings, self.clock)
        self.audit = AuditService(db)

    def issue_tokens(self, account: Any, session_meta: Optional[SessionMetadata] = None) -> TokenPair:
        """
        Mint an access/refresh pair for a fresh login.

        The new record starts its own family. Afterwards only the account's
        most recent MAX_SESSION_FAMILIES families are kept.
        """
        pair = self._mint(account, family_id=None, session_meta=session_meta)
        self.db.commit()
        return pair

    def verify_access_token(self, token: str) -> Optional[Dict[str, Any]]:
        """
        Signature and expiry check only; no storage lookup.

        Access tokens cannot be revoked before they expire, which is why
        their lifetime is short.
        """
        return decode_access_token(token, self.settings)

    def rotate_refresh_token(
        self,
        old_token: str,
        session_meta: Optional[SessionMetadata] = None,
    ) -> Optional[TokenPair]:
        """
        Exchange a refresh token for a new pair in the same family.

        Presenting a token whose record is gone while other records of its
        family still exist means a superseded token is being replayed: the
        whole family is revoked. The caller gets None either way and cannot
        tell an expired token from a stolen one.
        """
        payload = decode_token(old_token, self.settings)
        if not payload or payload.get("typ") != REFRESH_TOKEN_TYPE:
            return None

        account_id = payload.get("sub")
        family_id = payload.get("fam")
        if not account_id or not family_id:
            return None

        token_hash = hash_token(old_token)
        record = self.db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash).first()
        if record is None or record.account_id != account_id:
            self._handle_unknown_token(account_id, family_id, session_meta)
            return None

        now = self.clock()
        if record.expires_at <= now:
            self.db.delete(record)
            self.db.commit()
            return None

        account = self.db.get(Account, account_id)
        if account is None:
            return None

        merged = SessionMetadata(
            ip_address=(session_meta.ip_address if session_meta else None) or record.ip_address,
            user_agent=record.user_agent or (session_meta.user_agent if session_meta else None),
        )
        record_family = record.family_id

        # Consume by id; a concurrent rotation that got here first leaves nothing to delete
        consumed = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.id == record.id)
            .delete(synchronize_session=False)
        )
        if consumed == 0:
            self.db.rollback()
            self._handle_unknown_token(account_id, record_family, session_meta)
            return None

        pair = self._mint(account, family_id=record_family, session_meta=merged)
        self.db.commit()
        return pair

    def revoke_refresh_token(self, token: str) -> bool:
        deleted = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.token_hash == hash_token(token))
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted > 0

    def revoke_all_for_account(self, account_id: str) -> int:
        deleted = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.account_id == account_id)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return deleted

    def revoke_family(self, family_id: str, account_id: Optional[str] = None) -> int:
        query = self.db.query(RefreshToken).filter(RefreshToken.family_id == family_id)
        if account_id:
            query = query.filter(RefreshToken.account_id == account_id)
        deleted = query.delete(synchronize_session=False)
        self.db.commit()
        return deleted

    @staticmethod
    def hash_token(token: str) -> str:
        return hash_token(token)

    def _handle_unknown_token(
        self,
        account_id: str,
        family_id: str,
        session_meta: Optional[SessionMetadata],
    ) -> None:
        survivors = (
            self.db.query(func.count(RefreshToken.id))
            .filter(RefreshToken.family_id == family_id, RefreshToken.account_id == account_id)
            .scalar()
        )
        if not survivors:
            # Expired and swept, logged out, or never ours
            return

        revoked = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.family_id == family_id, RefreshToken.account_id == account_id)
            .delete(synchronize_session=False)
        )
        ip_address = session_meta.ip_address if session_meta else None
        self.audit.log_event(
            account_id=account_id,
            action="refresh_token_reuse",
            target_type="session_family",
            target_id=family_id,
            ip_address=ip_address,
            metadata={"revoked_sessions": revoked},
            commit=False,
        )
        self.db.commit()
        REFRESH_THEFT_DETECTED.inc()
        logger.warning(
            f"Refresh token reuse detected for account {account_id}: "
            f"revoked family {family_id} ({revoked} sessions) ip={ip_address}"
        )

    def _mint(
        self,
        account: Any,
        family_id: Optional[str],
        session_meta: Optional[SessionMetadata],
    ) -> TokenPair:
        now = self.clock()
        record_id = new_id()
        family_id = family_id or record_id

        context = self.groups.resolve_access(account.id)
        highest_role = context.highest_role if context else None
        access_token = create_access_token(
            {
                "sub": account.id,
                "username": account.username,
                "is_system_admin": bool(account.is_system_admin),
                "role": highest_role.value if highest_role else None,
            },
            self.settings,
            now=now,
        )

        lifetime = timedelta(days=self.settings.REFRESH_TOKEN_EXPIRE_DAYS)
        refresh_token = create_refresh_token(
            account.id,
            family_id,
            self.settings,
            expires_delta=lifetime,
            now=now,
        )

        meta = session_meta or SessionMetadata()
        self.db.add(RefreshToken(
            id=record_id,
            account_id=account.id,
            family_id=family_id,
            token_hash=hash_token(refresh_token),
            expires_at=now + lifetime,
            created_at=now,
            last_used_at=now,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        ))
        self.db.flush()
        self._apply_retention(account.id)

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            family_id=family_id,
            session_id=record_id,
        )

    def _apply_retention(self, account_id: str) -> None:
        """Drop every family except the account's most recently active ones."""
        newest = func.max(RefreshToken.created_at)
        keep = [
            family_id
            for (family_id,) in (
                self.db.query(RefreshToken.family_id)
                .filter(RefreshToken.account_id == account_id)
                .group_by(RefreshToken.family_id)
                .order_by(newest.desc())
                .limit(self.settings.MAX_SESSION_FAMILIES)
                .all()
            )
        ]
        pruned = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.account_id == account_id, RefreshToken.family_id.notin_(keep))
            .delete(synchronize_session=False)
        )
        if pruned:
            logger.info(f"Pruned {pruned} refresh tokens of old sessions for account {account_id}")
