import os

# Settings are read at import time; point them at throwaway values first.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-session-tests-0123456789")
os.environ.setdefault("DB_INIT_MODE", "off")

from datetime import datetime, timedelta, timezone

import bcrypt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.core.database import Base
from app.core.token_codec import TokenCodec
from app.models.company import Company
from app.models.user import User
from app.services.credential_store import CredentialStore
from app.services.session_manager import SessionConfig, SessionManager
from app.services.user_service import UserService


class FakeClock:
    """Manually advanced clock shared by codec, store and manager."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="session")
def db_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # The in-memory DB persists across tests with StaticPool; reset schema per test.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def session_config():
    return SessionConfig(
        access_ttl=timedelta(hours=24),
        refresh_ttl=timedelta(days=7),
        grace_period=timedelta(minutes=15),
        rotation_interval=timedelta(hours=24),
        rotation_hint_threshold=timedelta(hours=1),
    )


@pytest.fixture()
def codec(clock):
    return TokenCodec(settings.SECRET_KEY, "HS256", clock=clock)


@pytest.fixture()
def store(db_session, clock):
    return CredentialStore(db_session, clock=clock)


@pytest.fixture()
def users(db_session, clock):
    return UserService(db_session, clock=clock)


@pytest.fixture()
def manager(store, codec, users, session_config, clock):
    return SessionManager(store=store, codec=codec, users=users, config=session_config, clock=clock)


@pytest.fixture()
def make_user(db_session):
    def _make(
        email="owner@acme.com",
        password="correct-horse",
        role="admin",
        company=None,
        is_active=True,
    ) -> User:
        if company is None:
            company = Company(name="Acme")
            db_session.add(company)
            db_session.flush()
        user = User(
            company_id=company.id,
            name=email.split("@")[0],
            email=email,
            # Low cost factor keeps the suite fast.
            password_hash=bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8"),
            role=role,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def client(db_session, clock):
    from app.api.deps import get_clock
    from app.core.database import get_db
    from app.main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
