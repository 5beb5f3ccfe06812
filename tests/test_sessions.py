"""
tests/test_sessions.py -- Unit tests for SessionManager and session storage.

Covers:
  - issue/validate round trip; tokens are stored only as HMAC digests
  - validate() failure order: not found, revoked, expired
  - validity is monotonic: once expired or revoked, never valid again
  - sliding refresh: threshold, extension, absolute cap, disabled (fixed expiry)
  - extend_session never moves expiry backward, including under thread races
  - revoke idempotency, revoke_all, list_active, purge_expired
  - switch_organization membership checks

All lifetime tests run on a FrozenClock; nothing sleeps.
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from auth.errors import (
    AuthenticationError,
    Forbidden,
    SessionExpired,
    SessionNotFound,
    SessionRevoked,
)
from auth.models import Organization, UserIdentity
from auth.organizations import MembershipResolver
from auth.passwords import BcryptHasher
from auth.sessions import SessionManager, generate_token, hash_token
from auth.store import AuthStore

THIRTY_DAYS = timedelta(days=30)


@pytest.fixture
def user_id(store) -> str:
    record = BcryptHasher(rounds=4).hash("password1")
    return store.create_user(UserIdentity(email="ann@x.com"), record).id


@pytest.fixture
def sessions(store, settings, clock) -> SessionManager:
    return SessionManager(store, settings, MembershipResolver(store), clock=clock)


def _manager(store, settings, clock) -> SessionManager:
    return SessionManager(store, settings, MembershipResolver(store), clock=clock)


class TestTokens:
    def test_token_entropy(self) -> None:
        tokens = {generate_token() for _ in range(100)}
        assert len(tokens) == 100
        assert all(len(t) >= 43 for t in tokens)  # 32 bytes, base64url

    def test_hash_is_keyed(self) -> None:
        token = generate_token()
        assert hash_token(token, "a" * 32) == hash_token(token, "a" * 32)
        assert hash_token(token, "a" * 32) != hash_token(token, "b" * 32)
        assert len(hash_token(token, "a" * 32)) == 64

    def test_raw_token_never_stored(self, sessions, store, settings, user_id) -> None:
        session = sessions.issue(user_id)
        assert store.find_session_by_token_hash(session.token) is None
        assert store.find_session_by_token_hash(hash_token(session.token, settings.secret_key)).id == session.id


class TestIssueAndValidate:
    def test_round_trip(self, sessions, clock, user_id) -> None:
        issued = sessions.issue(user_id, ip_address="10.0.0.1", user_agent="pytest")
        assert issued.expires_at == clock.now() + THIRTY_DAYS

        session = sessions.validate(issued.token)
        assert session.id == issued.id
        assert session.user_id == user_id
        assert session.active_organization_id is None
        assert session.token == issued.token
        assert session.ip_address == "10.0.0.1"

    def test_system_clock_times_survive_storage(self, store, settings, user_id) -> None:
        live = SessionManager(store, settings, MembershipResolver(store))
        issued = live.issue(user_id)
        session = live.validate(issued.token)
        assert session.created_at == issued.created_at
        assert session.expires_at == issued.expires_at

    def test_unknown_token(self, sessions) -> None:
        with pytest.raises(SessionNotFound):
            sessions.validate(generate_token())

    def test_valid_exactly_at_expiry(self, sessions, clock, user_id, settings_factory, store) -> None:
        fixed = _manager(store, settings_factory(session_sliding_refresh=False), clock)
        session = fixed.issue(user_id)
        clock.advance(days=30)
        assert fixed.validate(session.token).id == session.id
        clock.advance(seconds=1)
        with pytest.raises(SessionExpired):
            fixed.validate(session.token)

    def test_expired_stays_invalid(self, sessions, clock, user_id) -> None:
        session = sessions.issue(user_id)
        clock.advance(days=31)
        with pytest.raises(SessionExpired):
            sessions.validate(session.token)
        # Even if the clock were wound back, the session stays dead.
        clock.advance(days=-2)
        with pytest.raises(AuthenticationError):
            sessions.validate(session.token)

    def test_revoked_checked_before_expired(self, sessions, clock, user_id) -> None:
        session = sessions.issue(user_id)
        sessions.revoke(session.token)
        clock.advance(days=31)
        with pytest.raises(SessionRevoked):
            sessions.validate(session.token)

    def test_issue_with_organization_requires_membership(self, sessions, store, user_id) -> None:
        other = store.create_user(UserIdentity(email="bob@x.com"), BcryptHasher(rounds=4).hash("password1"))
        org = store.create_organization(Organization(name="Acme", slug="acme"), owner_id=other.id)
        with pytest.raises(Forbidden):
            sessions.issue(user_id, organization_id=org.id)
        session = sessions.issue(other.id, organization_id=org.id)
        assert sessions.validate(session.token).active_organization_id == org.id


class TestRevoke:
    def test_revoke_is_idempotent(self, sessions, user_id) -> None:
        session = sessions.issue(user_id)
        sessions.revoke(session.token)
        sessions.revoke(session.token)
        with pytest.raises(SessionRevoked):
            sessions.validate(session.token)

    def test_revoke_unknown_token_is_noop(self, sessions) -> None:
        sessions.revoke(generate_token())

    def test_revoke_all_except_current(self, sessions, user_id) -> None:
        keep = sessions.issue(user_id)
        others = [sessions.issue(user_id) for _ in range(3)]
        assert sessions.revoke_all(user_id, except_token=keep.token) == 3
        assert sessions.validate(keep.token).id == keep.id
        for s in others:
            with pytest.raises(SessionRevoked):
                sessions.validate(s.token)

    def test_revoke_all(self, sessions, user_id) -> None:
        session = sessions.issue(user_id)
        assert sessions.revoke_all(user_id) == 1
        with pytest.raises(SessionRevoked):
            sessions.validate(session.token)


class TestSlidingRefresh:
    def test_no_refresh_within_threshold(self, sessions, clock, user_id) -> None:
        session = sessions.issue(user_id)
        clock.advance(hours=12)  # threshold is 1 day (1/30 of 30 days)
        assert sessions.validate(session.token).expires_at == session.expires_at

    def test_refresh_after_threshold(self, sessions, store, settings, clock, user_id) -> None:
        session = sessions.issue(user_id)
        now = clock.advance(days=2)
        refreshed = sessions.validate(session.token)
        assert refreshed.expires_at == now + THIRTY_DAYS
        assert refreshed.last_seen_at == now
        assert refreshed.token == session.token

        stored = store.find_session_by_token_hash(hash_token(session.token, settings.secret_key))
        assert stored.expires_at == now + THIRTY_DAYS

    def test_active_session_outlives_initial_expiry(self, sessions, clock, user_id) -> None:
        session = sessions.issue(user_id)
        for _ in range(5):
            clock.advance(days=20)
            sessions.validate(session.token)
        assert sessions.validate(session.token).user_id == user_id

    def test_fixed_expiry_when_sliding_disabled(self, store, settings_factory, clock, user_id) -> None:
        fixed = _manager(store, settings_factory(session_sliding_refresh=False), clock)
        session = fixed.issue(user_id)
        clock.advance(days=15)
        assert fixed.validate(session.token).expires_at == session.expires_at
        clock.advance(days=16)
        with pytest.raises(SessionExpired):
            fixed.validate(session.token)

    def test_absolute_cap(self, store, settings_factory, clock, user_id) -> None:
        capped = _manager(store, settings_factory(session_absolute_max_age_seconds=40 * 86400), clock)
        session = capped.issue(user_id)
        clock.advance(days=20)
        assert capped.validate(session.token).expires_at == session.created_at + timedelta(days=40)
        clock.advance(days=20)
        assert capped.validate(session.token).user_id == user_id
        clock.advance(seconds=1)
        with pytest.raises(SessionExpired):
            capped.validate(session.token)


class TestExpiryMonotonic:
    def test_extend_never_moves_backward(self, sessions, store, settings, clock, user_id) -> None:
        session = sessions.issue(user_id)
        token_hash = hash_token(session.token, settings.secret_key)
        later = session.expires_at + timedelta(days=5)
        assert store.extend_session(token_hash, later, clock.now()) is True
        assert store.extend_session(token_hash, later - timedelta(days=1), clock.now()) is False
        assert store.find_session_by_token_hash(token_hash).expires_at == later

    def test_extend_does_not_resurrect_revoked(self, sessions, store, settings, clock, user_id) -> None:
        session = sessions.issue(user_id)
        token_hash = hash_token(session.token, settings.secret_key)
        sessions.revoke(session.token)
        assert store.extend_session(token_hash, session.expires_at + THIRTY_DAYS, clock.now()) is False

    def test_concurrent_refresh_keeps_latest_expiry(self, tmp_path, settings, clock, user_id) -> None:
        """Racing validations from different instants leave the maximum expiry stored."""
        file_store = AuthStore(db_url=f"sqlite:///{tmp_path / 'race.db'}", timeout_seconds=10.0)
        try:
            owner = file_store.create_user(UserIdentity(email="race@x.com"), BcryptHasher(rounds=4).hash("password1"))
            session = _manager(file_store, settings, clock).issue(owner.id)

            offsets = list(range(2, 22))
            managers = [
                _manager(file_store, settings, type(clock)(clock.now() + timedelta(days=d))) for d in offsets
            ]
            errors: list[Exception] = []
            barrier = threading.Barrier(len(managers))

            def run(manager: SessionManager) -> None:
                barrier.wait()
                try:
                    manager.validate(session.token)
                except Exception as exc:  # collected for the assertion below
                    errors.append(exc)

            threads = [threading.Thread(target=run, args=(m,)) for m in reversed(managers)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert errors == []
            stored = file_store.find_session_by_token_hash(hash_token(session.token, settings.secret_key))
            assert stored.expires_at == clock.now() + timedelta(days=max(offsets)) + THIRTY_DAYS
        finally:
            file_store.close()


class TestListAndPurge:
    def test_list_active_excludes_revoked_and_expired(self, sessions, store, settings_factory, clock, user_id):
        live = sessions.issue(user_id)
        revoked = sessions.issue(user_id)
        sessions.revoke(revoked.token)
        short = _manager(store, settings_factory(session_max_age_seconds=60), clock).issue(user_id)
        clock.advance(minutes=5)

        listed = sessions.list_active(user_id)
        ids = {s.id for s in listed}
        assert live.id in ids
        assert revoked.id not in ids
        assert short.id not in ids
        assert all(s.token is None for s in listed)

    def test_purge_removes_only_expired(self, sessions, store, settings, clock, user_id) -> None:
        expired = sessions.issue(user_id)
        clock.advance(days=31)
        revoked = sessions.issue(user_id)
        sessions.revoke(revoked.token)
        live = sessions.issue(user_id)

        assert sessions.purge_expired() == 1
        assert store.find_session_by_token_hash(hash_token(expired.token, settings.secret_key)) is None
        # Revoked but unexpired rows stay, so the token keeps resolving to "revoked".
        with pytest.raises(SessionRevoked):
            sessions.validate(revoked.token)
        assert sessions.validate(live.token).id == live.id

    def test_purged_token_is_not_found(self, sessions, clock, user_id) -> None:
        session = sessions.issue(user_id)
        clock.advance(days=31)
        sessions.purge_expired()
        with pytest.raises(SessionNotFound):
            sessions.validate(session.token)


class TestSwitchOrganization:
    @pytest.fixture
    def org_ids(self, store, user_id) -> tuple[str, str]:
        other = store.create_user(UserIdentity(email="bob@x.com"), BcryptHasher(rounds=4).hash("password1"))
        org_a = store.create_organization(Organization(name="A", slug="org-a"), owner_id=user_id)
        org_b = store.create_organization(Organization(name="B", slug="org-b"), owner_id=other.id)
        return org_a.id, org_b.id

    def test_switch_to_member_org(self, sessions, org_ids, user_id) -> None:
        org_a, _ = org_ids
        session = sessions.issue(user_id)
        assert sessions.switch_organization(session.token, org_a).active_organization_id == org_a
        assert sessions.validate(session.token).active_organization_id == org_a

    def test_switch_to_foreign_org_forbidden(self, sessions, org_ids, user_id) -> None:
        org_a, org_b = org_ids
        session = sessions.issue(user_id)
        sessions.switch_organization(session.token, org_a)
        with pytest.raises(Forbidden):
            sessions.switch_organization(session.token, org_b)
        assert sessions.validate(session.token).active_organization_id == org_a

    def test_clear_active_org(self, sessions, org_ids, user_id) -> None:
        org_a, _ = org_ids
        session = sessions.issue(user_id, organization_id=org_a)
        assert sessions.switch_organization(session.token, None).active_organization_id is None
        assert sessions.validate(session.token).active_organization_id is None

    def test_switch_on_revoked_session(self, sessions, org_ids, user_id) -> None:
        org_a, _ = org_ids
        session = sessions.issue(user_id)
        sessions.revoke(session.token)
        with pytest.raises(SessionRevoked):
            sessions.switch_organization(session.token, org_a)
