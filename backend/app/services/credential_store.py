"""Durable storage for refresh credential records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.clock import Clock, utc_now
from app.core.exceptions import DuplicateCredentialError, StorageUnavailableError
from app.models.credential import AuthCredential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestMeta:
    """Client metadata recorded alongside a credential"""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def _storage_guard(func):
    """Roll back and surface backing-store failures as StorageUnavailableError."""

    @wraps(func)
    def wrapper(self: "CredentialStore", *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except (DuplicateCredentialError, StorageUnavailableError):
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Credential store failure in {func.__name__}: {exc}")
            raise StorageUnavailableError() from exc

    return wrapper


class CredentialStore:
    """Queryable persistence for issued refresh credentials"""

    def __init__(self, db: Session, clock: Clock = utc_now):
        self.db = db
        self._clock = clock

    @_storage_guard
    def create(
        self,
        owner_id: int,
        secret_digest: str,
        expires_at: datetime,
        meta: Optional[RequestMeta] = None,
        parent_id: Optional[int] = None,
    ) -> AuthCredential:
        """`parent_id` names the credential this one was rotated from."""
        meta = meta or RequestMeta()
        now = self._clock()
        record = AuthCredential(
            user_id=owner_id,
            token_hash=secret_digest,
            parent_id=parent_id,
            issued_at=now,
            expires_at=expires_at,
            revoked=False,
            last_used_at=now,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.error(f"Rejected credential with colliding digest for user {owner_id}")
            raise DuplicateCredentialError() from exc
        self.db.refresh(record)
        return record

    @_storage_guard
    def find_active_by_owner(self, owner_id: int) -> List[AuthCredential]:
        return (
            self.db.query(AuthCredential)
            .filter(
                AuthCredential.user_id == owner_id,
                AuthCredential.revoked == False,  # noqa: E712
                AuthCredential.expires_at > self._clock(),
            )
            .order_by(AuthCredential.issued_at.desc(), AuthCredential.id.desc())
            .all()
        )

    @_storage_guard
    def find_by_digest(self, digest: str) -> Optional[AuthCredential]:
        return self.db.query(AuthCredential).filter(AuthCredential.token_hash == digest).first()

    @_storage_guard
    def find_by_id(self, credential_id: int) -> Optional[AuthCredential]:
        return self.db.query(AuthCredential).filter(AuthCredential.id == credential_id).first()

    @_storage_guard
    def revoke(self, credential: AuthCredential) -> None:
        """Idempotent; an already revoked credential keeps its first revoked_at."""
        (
            self.db.query(AuthCredential)
            .filter(AuthCredential.id == credential.id, AuthCredential.revoked == False)  # noqa: E712
            .update({"revoked": True, "revoked_at": self._clock()}, synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(credential)

    @_storage_guard
    def revoke_lineage(self, credential: AuthCredential) -> int:
        """
        Revoke a credential and every credential it was rotated from.

        Returns:
            Number of records that were still unrevoked
        """
        lineage = []
        current_id = credential.id
        while current_id is not None and current_id not in lineage:
            lineage.append(current_id)
            current_id = (
                self.db.query(AuthCredential.parent_id)
                .filter(AuthCredential.id == current_id)
                .scalar()
            )

        count = (
            self.db.query(AuthCredential)
            .filter(AuthCredential.id.in_(lineage), AuthCredential.revoked == False)  # noqa: E712
            .update({"revoked": True, "revoked_at": self._clock()}, synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        return count

    @_storage_guard
    def revoke_all_for_owner(self, owner_id: int) -> int:
        count = (
            self.db.query(AuthCredential)
            .filter(AuthCredential.user_id == owner_id, AuthCredential.revoked == False)  # noqa: E712
            .update({"revoked": True, "revoked_at": self._clock()}, synchronize_session=False)
        )
        self.db.commit()
        # Bulk update bypasses the identity map; drop stale in-memory state.
        self.db.expire_all()
        return count

    @_storage_guard
    def mark_rotated(self, credential: AuthCredential) -> bool:
        """
        Set rotated_at if unset, as a single conditional UPDATE.

        Returns:
            True when this call performed the transition, False when another
            writer got there first (or the credential is revoked).
        """
        won = (
            self.db.query(AuthCredential)
            .filter(
                AuthCredential.id == credential.id,
                AuthCredential.rotated_at.is_(None),
                AuthCredential.revoked == False,  # noqa: E712
            )
            .update({"rotated_at": self._clock()}, synchronize_session=False)
        ) == 1
        self.db.commit()
        self.db.refresh(credential)
        return won

    @_storage_guard
    def touch(self, credential: AuthCredential, meta: Optional[RequestMeta] = None) -> None:
        values = {"last_used_at": self._clock()}
        if meta is not None:
            if meta.ip_address:
                values["ip_address"] = meta.ip_address
            if meta.user_agent:
                values["user_agent"] = meta.user_agent
        (
            self.db.query(AuthCredential)
            .filter(AuthCredential.id == credential.id)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(credential)

    @_storage_guard
    def sweep_expired(self) -> int:
        """Delete records that are expired or revoked."""
        count = (
            self.db.query(AuthCredential)
            .filter(or_(AuthCredential.expires_at <= self._clock(), AuthCredential.revoked == True))  # noqa: E712
            .delete(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        logger.info(f"Swept {count} expired or revoked credentials")
        return count
