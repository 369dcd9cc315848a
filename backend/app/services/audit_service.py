"""Audit trail for security-relevant session events."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.audit import AuditEvent
from app.models.user import User

logger = logging.getLogger(__name__)


class AuditService:
    """Persist immutable audit trail entries."""

    LOGIN = "auth.login"
    SIGNUP = "auth.signup"
    LOGOUT_ALL = "auth.logout_all"
    ADMIN_REVOKE = "auth.admin_revoke_sessions"
    REUSE_DETECTED = "auth.refresh_reuse_detected"

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        action: str,
        *,
        user: Optional[User] = None,
        user_id: Optional[int] = None,
        company_id: Optional[int] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        """
        Write one audit event.

        Audit writes never fail the request that triggered them; a storage
        error is logged and None is returned.
        """
        if user is not None:
            user_id = user.id
            company_id = user.company_id
        event = AuditEvent(
            user_id=user_id,
            company_id=company_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            ip_address=ip_address,
            metadata_json=json.dumps(metadata or {}, ensure_ascii=False),
        )
        try:
            self.db.add(event)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Failed to record audit event {action}: {exc}")
            return None
        self.db.refresh(event)
        return event
