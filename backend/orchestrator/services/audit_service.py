"""Audit service for security-relevant events."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from orchestrator.models.audit import AuditEvent


class AuditService:
    """Persist immutable audit trail entries."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def log_event(
        self,
        *,
        account_id: Optional[str],
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True,
    ) -> AuditEvent:
        """
        Record an event.

        With ``commit=False`` the row joins the caller's transaction, so it
        lands or rolls back together with the change it describes.
        """
        event = AuditEvent(
            account_id=account_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            ip_address=ip_address,
            metadata_json=json.dumps(metadata or {}, ensure_ascii=False),
        )
        self.db.add(event)
        if commit:
            self.db.commit()
            self.db.refresh(event)
        return event

    def list_events(
        self,
        *,
        account_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        query = self.db.query(AuditEvent)
        if account_id:
            query = query.filter(AuditEvent.account_id == account_id)
        if action:
            query = query.filter(AuditEvent.action == action)
        return query.order_by(AuditEvent.id.desc()).limit(limit).all()
