"""Audit trail of session-affecting actions (logins, mass revocations, reuse)"""

import json

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.sql import func

from app.core.database import Base


class AuditEvent(Base):
    """Append-only; rows are never updated"""

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True)
    # Reuse detection may fire for an owner id that no longer resolves to an account.
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    action = Column(String(64), nullable=False)
    target_type = Column(String(64))
    target_id = Column(String(128))
    ip_address = Column(String(64))
    metadata_json = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("idx_audit_events_action", "action"),
        Index("idx_audit_events_company_id", "company_id"),
        Index("idx_audit_events_created_at", "created_at"),
    )

    @property
    def event_metadata(self) -> dict:
        return json.loads(self.metadata_json) if self.metadata_json else {}

    def __repr__(self):
        return f"<AuditEvent(id={self.id}, action='{self.action}', user_id={self.user_id})>"
