from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.database import Base
from app.core.exceptions import (
    SessionInvalidatedError,
    TokenExpiredError,
    TokenMalformedError,
    UnauthenticatedError,
)
from app.core.security import hash_token
from app.core.token_codec import TokenPurpose
from app.models.company import Company
from app.models.credential import AuthCredential
from app.models.user import User
from app.services.credential_store import CredentialStore, RequestMeta
from app.services.session_manager import SessionManager
from app.services.user_service import UserService


def _revoked_flags(db, owner_id):
    db.expire_all()
    return [c.revoked for c in db.query(AuthCredential).filter(AuthCredential.user_id == owner_id)]


def test_issue_persists_only_the_digest(manager, codec, db_session, make_user):
    user = make_user()

    issued = manager.issue(user, RequestMeta("10.0.0.1", "pytest"))

    record = db_session.query(AuthCredential).one()
    assert record.id == issued.refresh_credential_id
    assert record.token_hash == hash_token(issued.refresh_token)
    access = codec.verify(issued.access_token)
    assert access.purpose is TokenPurpose.ACCESS
    assert access.session_id == record.id
    assert access.tenant_id == user.company_id
    assert codec.verify(issued.refresh_token).purpose is TokenPurpose.REFRESH


def test_authenticate_resolves_account(manager, make_user):
    user = make_user()
    issued = manager.issue(user)

    assert manager.authenticate(issued.access_token).id == user.id


def test_authenticate_rejects_refresh_token(manager, make_user):
    issued = manager.issue(make_user())

    with pytest.raises(UnauthenticatedError):
        manager.authenticate(issued.refresh_token)


def test_authenticate_rejects_expired_access_token(manager, clock, make_user):
    issued = manager.issue(make_user())
    clock.advance(hours=24)

    with pytest.raises(UnauthenticatedError):
        manager.authenticate(issued.access_token)


def test_authenticate_rejects_disabled_account(manager, db_session, make_user):
    user = make_user()
    issued = manager.issue(user)
    user.is_active = False
    db_session.commit()

    with pytest.raises(UnauthenticatedError):
        manager.authenticate(issued.access_token)


def test_access_token_survives_logout_by_default(manager, make_user):
    user = make_user()
    issued = manager.issue(user)

    manager.logout_all(user.id)

    assert manager.authenticate(issued.access_token).id == user.id


def test_strict_access_check_honours_revocation(store, codec, users, session_config, clock, make_user):
    strict = SessionManager(
        store=store,
        codec=codec,
        users=users,
        config=replace(session_config, strict_access_check=True),
        clock=clock,
    )
    user = make_user()
    issued = strict.issue(user)
    assert strict.authenticate(issued.access_token).id == user.id

    strict.logout_all(user.id)

    with pytest.raises(UnauthenticatedError):
        strict.authenticate(issued.access_token)


def test_rotate_issues_new_pair_and_marks_predecessor(manager, db_session, clock, make_user):
    user = make_user()
    first = manager.issue(user)
    clock.advance(hours=1)

    second = manager.rotate(first.refresh_token, RequestMeta("10.0.0.9", "rotating-agent"))

    assert second.refresh_token != first.refresh_token
    assert second.refresh_credential_id != first.refresh_credential_id
    predecessor = db_session.get(AuthCredential, first.refresh_credential_id)
    assert predecessor.rotated_at is not None
    assert predecessor.revoked is False
    assert predecessor.ip_address == "10.0.0.9"
    # Sliding expiry: the successor gets a full refresh lifetime.
    assert second.refresh_expires_at == clock() + timedelta(days=7)
    assert manager.authenticate(second.access_token).id == user.id


def test_rotate_with_access_token_is_rejected_without_teardown(manager, db_session, make_user):
    user = make_user()
    issued = manager.issue(user)

    with pytest.raises(TokenMalformedError) as exc_info:
        manager.rotate(issued.access_token)

    assert exc_info.value.reason == "purpose_mismatch"
    assert _revoked_flags(db_session, user.id) == [False]


def test_revoked_credential_can_never_rotate(manager, db_session, make_user):
    user = make_user()
    issued = manager.issue(user)
    other_device = manager.issue(user)
    manager.logout(issued.refresh_token)

    with pytest.raises(SessionInvalidatedError) as exc_info:
        manager.rotate(issued.refresh_token)

    assert exc_info.value.owner_id == user.id
    with pytest.raises(SessionInvalidatedError):
        manager.rotate(other_device.refresh_token)


def test_replay_within_grace_is_served(manager, db_session, clock, make_user):
    user = make_user()
    first = manager.issue(user)
    manager.rotate(first.refresh_token)
    clock.advance(minutes=14)

    duplicate = manager.rotate(first.refresh_token)

    assert manager.authenticate(duplicate.access_token).id == user.id
    assert not any(_revoked_flags(db_session, user.id))


def test_replay_after_grace_tears_down_everything(manager, db_session, clock, make_user):
    user = make_user()
    c1 = manager.issue(user)
    c2 = manager.rotate(c1.refresh_token)
    clock.advance(minutes=16)

    with pytest.raises(SessionInvalidatedError):
        manager.rotate(c1.refresh_token)

    assert all(_revoked_flags(db_session, user.id))
    with pytest.raises(SessionInvalidatedError):
        manager.rotate(c2.refresh_token)


def test_unknown_but_validly_signed_refresh_token_tears_down(manager, codec, db_session, make_user):
    user = make_user()
    manager.issue(user)
    forged = codec.issue(
        owner_id=user.id,
        role=user.role,
        tenant_id=user.company_id,
        purpose=TokenPurpose.REFRESH,
        ttl=timedelta(days=7),
    )

    with pytest.raises(SessionInvalidatedError):
        manager.rotate(forged.token)

    assert all(_revoked_flags(db_session, user.id))


def test_expired_refresh_token_is_not_treated_as_reuse(manager, db_session, clock, make_user):
    user = make_user()
    stale = manager.issue(user)
    clock.advance(days=6, hours=23)
    fresh = manager.issue(user)
    clock.advance(hours=2)

    with pytest.raises(TokenExpiredError):
        manager.rotate(stale.refresh_token)

    assert manager.rotate(fresh.refresh_token).owner_id == user.id


def test_expired_record_is_not_treated_as_reuse(manager, db_session, make_user):
    user = make_user()
    issued = manager.issue(user)
    record = db_session.get(AuthCredential, issued.refresh_credential_id)
    record.expires_at = record.issued_at
    db_session.commit()

    with pytest.raises(TokenExpiredError):
        manager.rotate(issued.refresh_token)

    assert _revoked_flags(db_session, user.id) == [False]


def test_rotate_refuses_disabled_account(manager, db_session, make_user):
    user = make_user()
    issued = manager.issue(user)
    user.is_active = False
    db_session.commit()

    with pytest.raises(UnauthenticatedError):
        manager.rotate(issued.refresh_token)


def test_logout_is_idempotent(manager, db_session, make_user):
    user = make_user()
    issued = manager.issue(user)

    manager.logout(issued.refresh_token)
    manager.logout(issued.refresh_token)
    manager.logout("not-even-a-token")

    assert _revoked_flags(db_session, user.id) == [True]


def test_logout_without_token_revokes_owner_sessions(manager, db_session, make_user):
    user = make_user()
    manager.issue(user)
    manager.issue(user)

    manager.logout(owner_id=user.id)

    assert _revoked_flags(db_session, user.id) == [True, True]


def test_logout_all_revokes_every_device(manager, db_session, make_user):
    user = make_user()
    devices = [manager.issue(user) for _ in range(3)]

    assert manager.logout_all(user.id) == 3

    assert manager.list_sessions(user.id) == []
    for device in devices:
        with pytest.raises(SessionInvalidatedError):
            manager.rotate(device.refresh_token)


def test_logout_all_leaves_other_accounts_alone(manager, db_session, make_user):
    alice = make_user(email="alice@acme.com")
    bob = make_user(email="bob@acme.com", company=alice.company, role="employee")
    manager.issue(alice)
    bob_session = manager.issue(bob)

    manager.logout_all(alice.id)

    assert manager.rotate(bob_session.refresh_token).owner_id == bob.id


def test_revoke_session_only_touches_own_credentials(manager, make_user):
    alice = make_user(email="alice@acme.com")
    bob = make_user(email="bob@acme.com", company=alice.company, role="employee")
    alice_session = manager.issue(alice)

    assert manager.revoke_session(bob.id, alice_session.refresh_credential_id) is False
    assert manager.revoke_session(alice.id, 9999) is False
    assert manager.revoke_session(alice.id, alice_session.refresh_credential_id) is True
    assert manager.list_sessions(alice.id) == []


def test_rotation_links_successor_to_predecessor(manager, db_session, make_user):
    user = make_user()
    first = manager.issue(user)

    second = manager.rotate(first.refresh_token)

    assert db_session.get(AuthCredential, first.refresh_credential_id).parent_id is None
    assert db_session.get(AuthCredential, second.refresh_credential_id).parent_id == first.refresh_credential_id


def test_logout_revokes_credentials_it_was_rotated_from(manager, db_session, clock, make_user):
    user = make_user()
    first = manager.issue(user)
    second = manager.rotate(first.refresh_token)
    clock.advance(minutes=1)

    manager.logout(second.refresh_token)
    clock.advance(minutes=1)

    # Still inside the grace window, but the device has logged out.
    with pytest.raises(SessionInvalidatedError):
        manager.rotate(first.refresh_token)
    assert all(_revoked_flags(db_session, user.id))


def test_logout_leaves_other_devices_alone(manager, db_session, make_user):
    user = make_user()
    laptop = manager.issue(user)
    phone = manager.issue(user)
    rotated_phone = manager.rotate(phone.refresh_token)

    manager.logout(rotated_phone.refresh_token)

    assert [c.id for c in manager.list_sessions(user.id)] == [laptop.refresh_credential_id]
    assert manager.rotate(laptop.refresh_token).owner_id == user.id


def test_revoke_session_revokes_credentials_it_was_rotated_from(manager, clock, make_user):
    user = make_user()
    first = manager.issue(user)
    second = manager.rotate(first.refresh_token)

    assert manager.revoke_session(user.id, second.refresh_credential_id) is True
    clock.advance(minutes=1)

    with pytest.raises(SessionInvalidatedError):
        manager.rotate(first.refresh_token)


def test_session_list_shows_one_row_per_device_after_rotations(manager, clock, make_user):
    user = make_user()
    latest = manager.issue(user)
    for _ in range(3):
        clock.advance(minutes=1)
        latest = manager.rotate(latest.refresh_token)
    other_device = manager.issue(user)

    sessions = manager.list_sessions(user.id)

    assert [c.id for c in sessions] == [other_device.refresh_credential_id, latest.refresh_credential_id]


def test_rotation_hint(manager, clock, make_user):
    issued = manager.issue(make_user())

    assert manager.needs_rotation_hint(issued.access_token) is False

    clock.advance(hours=23, minutes=30)
    assert manager.needs_rotation_hint(issued.access_token) is True

    clock.advance(hours=1)
    assert manager.needs_rotation_hint(issued.access_token) is False
    assert manager.needs_rotation_hint("garbage") is False


def test_rotation_hint_after_rotation_interval(store, codec, users, session_config, clock, make_user):
    long_lived = SessionManager(
        store=store,
        codec=codec,
        users=users,
        config=replace(session_config, access_ttl=timedelta(days=3)),
        clock=clock,
    )
    issued = long_lived.issue(make_user())

    clock.advance(hours=23)
    assert long_lived.needs_rotation_hint(issued.access_token) is False
    clock.advance(hours=1)
    assert long_lived.needs_rotation_hint(issued.access_token) is True


def test_concurrent_rotation_never_triggers_teardown(tmp_path, clock, codec, session_config, monkeypatch):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db_a, db_b = SessionLocal(), SessionLocal()

    def build(db):
        return SessionManager(
            store=CredentialStore(db, clock=clock),
            codec=codec,
            users=UserService(db, clock=clock),
            config=session_config,
            clock=clock,
        )

    try:
        company = Company(name="Race")
        user = User(company=company, name="racer", email="racer@acme.com", password_hash="x", role="admin")
        db_a.add_all([company, user])
        db_a.commit()

        manager_a, manager_b = build(db_a), build(db_b)
        original = manager_a.issue(user)
        results = {}

        # A reads the credential, then B completes a whole rotation before A writes.
        real_find = manager_a.store.find_by_digest

        def racing_find(digest):
            record = real_find(digest)
            results["b"] = manager_b.rotate(original.refresh_token)
            return record

        real_mark = manager_a.store.mark_rotated
        cas_outcomes = []

        def recording_mark(credential):
            won = real_mark(credential)
            cas_outcomes.append(won)
            return won

        monkeypatch.setattr(manager_a.store, "find_by_digest", racing_find)
        monkeypatch.setattr(manager_a.store, "mark_rotated", recording_mark)

        results["a"] = manager_a.rotate(original.refresh_token)

        assert cas_outcomes == [False]
        assert results["a"].refresh_token != results["b"].refresh_token

        check = SessionLocal()
        try:
            records = check.query(AuthCredential).all()
            assert len(records) == 3
            assert not any(r.revoked for r in records)
            rotated = [r for r in records if r.rotated_at is not None]
            assert [r.id for r in rotated] == [original.refresh_credential_id]
        finally:
            check.close()
    finally:
        db_a.close()
        db_b.close()
        engine.dispose()
