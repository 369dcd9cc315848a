"""Session lifecycle: issue, authenticate, rotate and revoke credentials.

Credential states::

    Active --rotate--> Rotated --grace elapsed--> (superseded; replay is reuse)
    Active --logout--> Revoked
    any    --expiry--> Expired

A rotated refresh credential is still honoured for ``grace_period`` so that
requests in flight with the pre-rotation token do not log the user out.
Presenting a refresh credential that is unknown, revoked, or rotated beyond
the grace period is treated as theft: every credential of the owner is
revoked before ``SessionInvalidatedError`` is raised.

All session truth lives in the credential store; the manager keeps no state
between calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, NoReturn, Optional, Protocol

from prometheus_client import Counter

from app.config import Settings
from app.core.clock import Clock, as_utc, utc_now
from app.core.exceptions import (
    SessionInvalidatedError,
    TokenError,
    TokenExpiredError,
    TokenMalformedError,
    UnauthenticatedError,
)
from app.core.security import hash_token
from app.core.token_codec import TokenClaims, TokenCodec, TokenPurpose
from app.models.credential import AuthCredential
from app.models.user import User
from app.services.credential_store import CredentialStore, RequestMeta

logger = logging.getLogger(__name__)

SESSION_EVENTS = Counter(
    "screenwatch_session_events_total",
    "Session lifecycle events",
    ["event"],
)


class UserRepository(Protocol):
    def find_by_id(self, user_id: int) -> Optional[User]: ...


@dataclass(frozen=True)
class SessionConfig:
    access_ttl: timedelta
    refresh_ttl: timedelta
    grace_period: timedelta
    rotation_interval: timedelta
    rotation_hint_threshold: timedelta
    strict_access_check: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionConfig":
        return cls(
            access_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            grace_period=timedelta(minutes=settings.TOKEN_ROTATION_GRACE_MINUTES),
            rotation_interval=timedelta(hours=settings.TOKEN_ROTATION_INTERVAL_HOURS),
            rotation_hint_threshold=timedelta(minutes=settings.TOKEN_ROTATION_HINT_MINUTES),
            strict_access_check=settings.SESSION_STRICT_ACCESS_CHECK,
        )


@dataclass(frozen=True)
class IssuedSession:
    """Token pair handed back to the caller; transport is the caller's choice"""
    access_token: str
    refresh_token: str
    refresh_credential_id: int
    owner_id: int
    expires_at: datetime
    refresh_expires_at: datetime

    def expires_in(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))


class SessionManager:
    """Orchestrates the credential state machine over injected collaborators"""

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        users: UserRepository,
        config: SessionConfig,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.codec = codec
        self.users = users
        self.config = config
        self._clock = clock

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------
    def issue(
        self,
        account: User,
        meta: Optional[RequestMeta] = None,
        predecessor: Optional[AuthCredential] = None,
    ) -> IssuedSession:
        """Create a persisted refresh credential and a stateless access token paired with it."""
        refresh = self.codec.issue(
            owner_id=account.id,
            role=account.role,
            tenant_id=account.company_id,
            purpose=TokenPurpose.REFRESH,
            ttl=self.config.refresh_ttl,
        )
        credential = self.store.create(
            account.id,
            hash_token(refresh.token),
            refresh.claims.expires_at_datetime,
            meta,
            parent_id=predecessor.id if predecessor is not None else None,
        )
        access = self.codec.issue(
            owner_id=account.id,
            role=account.role,
            tenant_id=account.company_id,
            purpose=TokenPurpose.ACCESS,
            ttl=self.config.access_ttl,
            session_id=credential.id,
        )
        SESSION_EVENTS.labels("issued").inc()
        logger.debug(f"Issued credential {credential.id} for user {account.id}")
        return IssuedSession(
            access_token=access.token,
            refresh_token=refresh.token,
            refresh_credential_id=credential.id,
            owner_id=account.id,
            expires_at=access.claims.expires_at_datetime,
            refresh_expires_at=refresh.claims.expires_at_datetime,
        )

    # ------------------------------------------------------------------
    # Request authentication
    # ------------------------------------------------------------------
    def authenticate(self, presented_token: str) -> User:
        """
        Resolve the account behind an access token

        Raises:
            UnauthenticatedError: for any token, session or account failure
        """
        try:
            claims = self._verify(presented_token, TokenPurpose.ACCESS)
        except TokenError as exc:
            logger.debug(f"Access token rejected: {exc.reason}")
            raise UnauthenticatedError() from exc

        if self.config.strict_access_check:
            if claims.session_id is None:
                raise UnauthenticatedError()
            credential = self.store.find_by_id(claims.session_id)
            if credential is None or credential.revoked or credential.user_id != claims.owner_id:
                raise UnauthenticatedError()

        account = self.users.find_by_id(claims.owner_id)
        if account is None or not account.is_active:
            raise UnauthenticatedError()
        return account

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------
    def rotate(self, presented_refresh_token: str, meta: Optional[RequestMeta] = None) -> IssuedSession:
        """
        Exchange a refresh token for a new pair

        Raises:
            TokenError: token-level failure (malformed, signature, expired)
            SessionInvalidatedError: reuse detected; all owner sessions revoked
            UnauthenticatedError: account missing or disabled
        """
        claims = self._verify(presented_refresh_token, TokenPurpose.REFRESH)
        credential = self.store.find_by_digest(hash_token(presented_refresh_token))
        now = self._clock()

        if credential is None or credential.user_id != claims.owner_id:
            self._teardown(claims.owner_id, "unknown refresh credential")
        if credential.revoked:
            self._teardown(claims.owner_id, f"revoked credential {credential.id} presented")
        if as_utc(credential.expires_at) <= now:
            raise TokenExpiredError()
        if credential.rotated_at is not None and not self._within_grace(credential, now):
            self._teardown(claims.owner_id, f"superseded credential {credential.id} replayed")

        account = self.users.find_by_id(claims.owner_id)
        if account is None or not account.is_active:
            raise UnauthenticatedError()

        if credential.rotated_at is None:
            if not self.store.mark_rotated(credential):
                # Lost the compare-and-set to a concurrent rotation; judge the stored state.
                if credential.revoked or not self._within_grace(credential, self._clock()):
                    self._teardown(claims.owner_id, f"credential {credential.id} superseded during rotation")
                logger.info(f"Concurrent rotation of credential {credential.id} served as duplicate")
                SESSION_EVENTS.labels("grace_replay").inc()
            else:
                SESSION_EVENTS.labels("rotated").inc()
        else:
            logger.info(f"Credential {credential.id} replayed within rotation grace period")
            SESSION_EVENTS.labels("grace_replay").inc()

        self.store.touch(credential, meta)
        return self.issue(account, meta, predecessor=credential)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------
    def logout(self, presented_refresh_token: Optional[str] = None, owner_id: Optional[int] = None) -> None:
        """
        Revoke one device (by refresh token) or, without a token, every session of ``owner_id``.

        The credentials the device was rotated from are revoked with it, so a
        predecessor still inside its grace window cannot be replayed. Idempotent:
        unknown or already revoked tokens are a no-op.
        """
        if presented_refresh_token:
            credential = self.store.find_by_digest(hash_token(presented_refresh_token))
            if credential is not None:
                count = self.store.revoke_lineage(credential)
                if count:
                    logger.info(f"Revoked {count} credentials ending at {credential.id} for user {credential.user_id}")
            SESSION_EVENTS.labels("logout").inc()
            return

        if owner_id is not None:
            self.logout_all(owner_id)

    def logout_all(self, owner_id: int) -> int:
        count = self.store.revoke_all_for_owner(owner_id)
        SESSION_EVENTS.labels("logout_all").inc()
        logger.info(f"Revoked {count} credentials for user {owner_id}")
        return count

    def list_sessions(self, owner_id: int) -> List[AuthCredential]:
        """One row per device: superseded credentials still in their grace window are left out."""
        return [c for c in self.store.find_active_by_owner(owner_id) if c.rotated_at is None]

    def revoke_session(self, owner_id: int, credential_id: int) -> bool:
        """Revoke one of the owner's own credentials. Returns False if it is not theirs."""
        credential = self.store.find_by_id(credential_id)
        if credential is None or credential.user_id != owner_id:
            return False
        self.store.revoke_lineage(credential)
        return True

    def sweep_expired(self) -> int:
        return self.store.sweep_expired()

    # ------------------------------------------------------------------
    # Advisory
    # ------------------------------------------------------------------
    def needs_rotation_hint(self, access_token: str) -> bool:
        """Whether the client should refresh soon. Advisory only; never gates access."""
        try:
            claims = self.codec.peek(access_token)
            if claims is None:
                return False
            now = self.codec.now_epoch()
            remaining = claims.expires_at - now
            if remaining <= 0:
                return False
            if remaining < self.config.rotation_hint_threshold.total_seconds():
                return True
            return now - claims.issued_at >= self.config.rotation_interval.total_seconds()
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"Rotation hint unavailable: {exc}")
            return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _verify(self, token: str, purpose: TokenPurpose) -> TokenClaims:
        claims = self.codec.verify(token)
        if claims.purpose is not purpose:
            raise TokenMalformedError("purpose_mismatch")
        return claims

    def _within_grace(self, credential: AuthCredential, now: datetime) -> bool:
        rotated_at = as_utc(credential.rotated_at)
        return rotated_at is not None and now <= rotated_at + self.config.grace_period

    def _teardown(self, owner_id: int, reason: str) -> NoReturn:
        count = self.store.revoke_all_for_owner(owner_id)
        SESSION_EVENTS.labels("reuse_detected").inc()
        logger.warning(f"Refresh reuse detected for user {owner_id} ({reason}); revoked {count} credentials")
        raise SessionInvalidatedError(owner_id)
