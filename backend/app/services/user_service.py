"""User service - account lookup, login verification and company signup"""

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional
from datetime import timedelta
from app.config import settings
from app.core.clock import Clock, as_utc, utc_now
from app.models.company import Company
from app.models.user import User
from app.core.security import get_password_hash, verify_password
from app.core.exceptions import (
    AccountLockedError,
    ResourceAlreadyExistsError,
    StorageUnavailableError,
)
import logging

logger = logging.getLogger(__name__)


class UserService:
    """Account repository consumed by the session manager and auth routes"""

    def __init__(
        self,
        db: Session,
        clock: Clock = utc_now,
        max_failed_attempts: int = settings.MAX_FAILED_LOGIN_ATTEMPTS,
        lockout_minutes: int = settings.LOCKOUT_DURATION_MINUTES,
    ):
        self.db = db
        self._clock = clock
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = timedelta(minutes=lockout_minutes)

    def find_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID"""
        try:
            return self.db.query(User).filter(User.id == user_id).first()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"User lookup failed for id={user_id}: {exc}")
            raise StorageUnavailableError("Account storage unavailable. Please try again later.") from exc

    def find_by_email(self, email: str) -> Optional[User]:
        """Get user by email"""
        return self.db.query(User).filter(User.email == email.strip().lower()).first()

    def verify_credentials(self, email: str, password: str) -> Optional[User]:
        """
        Verify an email/password pair with account lockout protection

        Args:
            email: Login email
            password: Plain text password

        Returns:
            The account, or None if the pair does not match an active account

        Raises:
            AccountLockedError: too many recent failures
        """
        user = self.find_by_email(email)
        if not user:
            return None

        now = self._clock()
        locked_until = as_utc(user.locked_until)
        if locked_until and locked_until > now:
            raise AccountLockedError(locked_until.isoformat())

        if not verify_password(password, user.password_hash):
            user.failed_login_attempts = (user.failed_login_attempts or 0) + 1

            if user.failed_login_attempts >= self.max_failed_attempts:
                user.locked_until = now + self.lockout_duration
                user.failed_login_attempts = 0
                self.db.commit()
                logger.warning(f"Account locked for user id={user.id}")
                raise AccountLockedError(user.locked_until.isoformat())

            self.db.commit()
            return None

        if not user.is_active:
            return None

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login = now
        self.db.commit()

        logger.info(f"User authenticated: id={user.id}")
        return user

    def create_company_admin(
        self,
        *,
        company_name: str,
        owner_name: str,
        owner_email: str,
        password: str,
    ) -> User:
        """
        Register a new company together with its first admin

        Raises:
            ResourceAlreadyExistsError: email already registered
        """
        email = owner_email.strip().lower()
        if self.find_by_email(email):
            raise ResourceAlreadyExistsError("Account")

        company = Company(name=company_name.strip())
        user = User(
            company=company,
            name=owner_name.strip(),
            email=email,
            password_hash=get_password_hash(password),
            role="admin",
        )
        self.db.add_all([company, user])
        self.db.commit()
        self.db.refresh(user)

        logger.info(f"Created company {company.id} with admin user id={user.id}")
        return user
