"""Persisted refresh credential records."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index, Text
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from app.core.database import Base


class AuthCredential(Base):
    """
    One issued refresh credential.

    Only the digest of the signed refresh token is stored. ``revoked`` only
    ever goes from false to true; ``rotated_at`` is written once, by a
    conditional update, when the credential is superseded.
    """

    __tablename__ = "auth_credentials"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False)
    # The credential this one was rotated from.
    parent_id = Column(Integer, ForeignKey("auth_credentials.id", ondelete="SET NULL"), nullable=True)
    issued_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    rotated_at = Column(DateTime(timezone=True), nullable=True)
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    user = relationship("User", back_populates="credentials")

    __table_args__ = (
        Index("idx_auth_credentials_user_revoked", "user_id", "revoked"),
        Index("idx_auth_credentials_expires_at", "expires_at"),
        Index("idx_auth_credentials_parent_id", "parent_id"),
    )

    def __repr__(self):
        return (
            f"<AuthCredential(id={self.id}, user_id={self.user_id}, "
            f"revoked={self.revoked}, rotated_at={self.rotated_at})>"
        )
