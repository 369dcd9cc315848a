"""Database models"""

from app.models.company import Company
from app.models.user import User
from app.models.credential import AuthCredential
from app.models.audit import AuditEvent

__all__ = ["Company", "User", "AuthCredential", "AuditEvent"]
