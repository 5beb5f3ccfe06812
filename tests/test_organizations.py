"""
tests/test_organizations.py -- Unit tests for MembershipResolver and OrganizationManager.

Covers:
  - Role ordering (owner > admin > member)
  - Resolver never defaults to access
  - create_organization: owner membership, slug validation, reserved and taken slugs
  - add_member / update_member_role / remove_member authorization rules
  - an organization always keeps one owner, including when owners leave or
    demote each other concurrently (file-backed SQLite, real threads)
  - members must be existing users
  - removing a member drops that organization from their sessions
"""

from __future__ import annotations

import threading

import pytest

from auth.errors import AlreadyMember, Forbidden, InvalidSlug, LastOwner, SlugTaken, ValidationError
from auth.models import Role, UserIdentity
from auth.organizations import MembershipResolver, OrganizationManager
from auth.passwords import BcryptHasher
from auth.store import AuthStore


@pytest.fixture
def users(store) -> dict[str, str]:
    """Create owner/admin/member/outsider users; return name -> id."""
    record = BcryptHasher(rounds=4).hash("password1")
    return {
        name: store.create_user(UserIdentity(email=f"{name}@x.com"), record).id
        for name in ("owner", "admin", "member", "outsider")
    }


@pytest.fixture
def resolver(store) -> MembershipResolver:
    return MembershipResolver(store)


@pytest.fixture
def manager(store, settings, resolver) -> OrganizationManager:
    return OrganizationManager(store, settings, resolver)


@pytest.fixture
def org_id(manager, users) -> str:
    """An organization with one owner, one admin and one member."""
    org = manager.create_organization(users["owner"], "Acme", "acme")
    manager.add_member(users["owner"], org.id, users["admin"], Role.admin)
    manager.add_member(users["owner"], org.id, users["member"], Role.member)
    return org.id


class TestRole:
    def test_ordering(self) -> None:
        assert Role.owner.at_least(Role.admin)
        assert Role.admin.at_least(Role.admin)
        assert not Role.member.at_least(Role.admin)
        assert Role.owner.rank > Role.admin.rank > Role.member.rank

    def test_closed_set(self) -> None:
        with pytest.raises(ValueError):
            Role("superuser")


class TestResolver:
    def test_memberships_for(self, resolver, users, org_id) -> None:
        assert resolver.memberships_for(users["admin"]) == {(org_id, Role.admin)}
        assert resolver.memberships_for(users["outsider"]) == set()

    def test_no_row_means_no_access(self, resolver, users, org_id) -> None:
        assert resolver.has_access(users["member"], org_id) is True
        assert resolver.has_access(users["outsider"], org_id) is False
        assert resolver.has_access(users["member"], "no-such-org") is False
        assert resolver.role_in(users["outsider"], org_id) is None

    def test_require_role(self, resolver, users, org_id) -> None:
        assert resolver.require_role(users["owner"], org_id, Role.admin) is Role.owner
        assert resolver.require_role(users["member"], org_id) is Role.member
        with pytest.raises(Forbidden):
            resolver.require_role(users["member"], org_id, Role.admin)
        with pytest.raises(Forbidden):
            resolver.require_role(users["outsider"], org_id)


class TestCreateOrganization:
    def test_creator_becomes_owner(self, manager, resolver, users) -> None:
        org = manager.create_organization(users["owner"], "  Acme Inc ", "Acme-Inc")
        assert org.id
        assert org.name == "Acme Inc"
        assert org.slug == "acme-inc"
        assert resolver.role_in(users["owner"], org.id) is Role.owner

    @pytest.mark.parametrize("slug", ["", "-acme", "acme-", "ac--me", "ac me", "acme_inc", "a" * 101])
    def test_invalid_slug(self, manager, users, slug: str) -> None:
        with pytest.raises(InvalidSlug):
            manager.create_organization(users["owner"], "Acme", slug)

    @pytest.mark.parametrize("slug", ["admin", "api", "new-organization"])
    def test_reserved_slug(self, manager, users, slug: str) -> None:
        with pytest.raises(InvalidSlug):
            manager.create_organization(users["owner"], "Acme", slug)

    def test_empty_name(self, manager, users) -> None:
        with pytest.raises(ValidationError):
            manager.create_organization(users["owner"], "   ", "acme")

    def test_duplicate_slug(self, manager, users) -> None:
        manager.create_organization(users["owner"], "Acme", "acme")
        with pytest.raises(SlugTaken):
            manager.create_organization(users["admin"], "Other Acme", "acme")

    def test_disabled(self, store, settings_factory, resolver, users) -> None:
        manager = OrganizationManager(store, settings_factory(allow_user_organizations=False), resolver)
        with pytest.raises(Forbidden):
            manager.create_organization(users["owner"], "Acme", "acme")


class TestAddMember:
    def test_admin_adds_member(self, manager, resolver, users, org_id) -> None:
        membership = manager.add_member(users["admin"], org_id, users["outsider"])
        assert membership.role is Role.member
        assert resolver.role_in(users["outsider"], org_id) is Role.member

    def test_member_cannot_add(self, manager, users, org_id) -> None:
        with pytest.raises(Forbidden):
            manager.add_member(users["member"], org_id, users["outsider"])

    def test_outsider_cannot_add(self, manager, users, org_id) -> None:
        with pytest.raises(Forbidden):
            manager.add_member(users["outsider"], org_id, users["outsider"])

    def test_only_owner_grants_owner(self, manager, resolver, users, org_id) -> None:
        with pytest.raises(Forbidden):
            manager.add_member(users["admin"], org_id, users["outsider"], Role.owner)
        manager.add_member(users["owner"], org_id, users["outsider"], Role.owner)
        assert resolver.role_in(users["outsider"], org_id) is Role.owner

    def test_duplicate_membership(self, manager, users, org_id) -> None:
        with pytest.raises(AlreadyMember):
            manager.add_member(users["owner"], org_id, users["member"], Role.admin)

    def test_unknown_user_rejected(self, manager, resolver, users, org_id) -> None:
        with pytest.raises(ValidationError):
            manager.add_member(users["owner"], org_id, "0" * 32)
        assert resolver.has_access("0" * 32, org_id) is False


class TestUpdateMemberRole:
    def test_admin_promotes_member(self, manager, resolver, users, org_id) -> None:
        updated = manager.update_member_role(users["admin"], org_id, users["member"], Role.admin)
        assert updated.role is Role.admin
        assert resolver.role_in(users["member"], org_id) is Role.admin

    def test_admin_cannot_touch_owner(self, manager, users, org_id) -> None:
        with pytest.raises(Forbidden):
            manager.update_member_role(users["admin"], org_id, users["owner"], Role.member)
        with pytest.raises(Forbidden):
            manager.update_member_role(users["admin"], org_id, users["member"], Role.owner)

    def test_last_owner_cannot_be_demoted(self, manager, users, org_id) -> None:
        with pytest.raises(LastOwner):
            manager.update_member_role(users["owner"], org_id, users["owner"], Role.admin)

    def test_owner_demotable_when_another_owner_exists(self, manager, resolver, users, org_id) -> None:
        manager.update_member_role(users["owner"], org_id, users["admin"], Role.owner)
        manager.update_member_role(users["admin"], org_id, users["owner"], Role.member)
        assert resolver.role_in(users["owner"], org_id) is Role.member

    def test_non_member_target(self, manager, users, org_id) -> None:
        with pytest.raises(Forbidden):
            manager.update_member_role(users["owner"], org_id, users["outsider"], Role.admin)


class TestRemoveMember:
    def test_admin_removes_member(self, manager, resolver, users, org_id) -> None:
        manager.remove_member(users["admin"], org_id, users["member"])
        assert resolver.has_access(users["member"], org_id) is False

    def test_member_leaves(self, manager, resolver, users, org_id) -> None:
        manager.remove_member(users["member"], org_id, users["member"])
        assert resolver.has_access(users["member"], org_id) is False

    def test_member_cannot_remove_others(self, manager, users, org_id) -> None:
        with pytest.raises(Forbidden):
            manager.remove_member(users["member"], org_id, users["admin"])

    def test_admin_cannot_remove_owner(self, manager, users, org_id) -> None:
        with pytest.raises(Forbidden):
            manager.remove_member(users["admin"], org_id, users["owner"])

    def test_last_owner_cannot_leave(self, manager, users, org_id) -> None:
        with pytest.raises(LastOwner):
            manager.remove_member(users["owner"], org_id, users["owner"])

    def test_removal_clears_active_org_on_sessions(self, auth, store, users, org_id) -> None:
        result = auth.sign_up("Dee", "dee@x.com", "password1")
        dee = result.user.id
        auth.organizations.add_member(users["owner"], org_id, dee)
        auth.switch_organization(result.session.token, org_id)

        auth.organizations.remove_member(users["owner"], org_id, dee)

        ctx = auth.validate_session(result.session.token)
        assert ctx.session.active_organization_id is None
        assert ctx.active_role is None
        assert ctx.memberships == []


class TestConcurrentOwnerChanges:
    """Two owners acting on each other at the same moment must not leave the org ownerless."""

    @pytest.fixture
    def race(self, tmp_path, settings):
        file_store = AuthStore(db_url=f"sqlite:///{tmp_path / 'owners.db'}", timeout_seconds=10.0, retry_attempts=3)
        record = BcryptHasher(rounds=4).hash("password1")
        a = file_store.create_user(UserIdentity(email="a@x.com"), record).id
        b = file_store.create_user(UserIdentity(email="b@x.com"), record).id
        manager = OrganizationManager(file_store, settings, MembershipResolver(file_store))
        org = manager.create_organization(a, "Acme", "acme")
        manager.add_member(a, org.id, b, Role.owner)

        # Every membership read waits for the other thread, so both sides
        # have seen two owners before either writes.
        barrier = threading.Barrier(2)
        find_membership = file_store.find_membership

        def find_then_wait(user_id, organization_id):
            membership = find_membership(user_id, organization_id)
            barrier.wait(timeout=10)
            return membership

        file_store.find_membership = find_then_wait
        yield file_store, manager, org.id, a, b
        file_store.close()

    @staticmethod
    def _run_pair(first, second) -> list[str]:
        outcomes: list[str] = []

        def run(action) -> None:
            try:
                action()
                outcomes.append("ok")
            except LastOwner:
                outcomes.append("last_owner")
            except Exception as exc:  # surfaced through the assertion below
                outcomes.append(repr(exc))

        threads = [threading.Thread(target=run, args=(action,)) for action in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return sorted(outcomes)

    def test_owners_leaving_together(self, race) -> None:
        file_store, manager, org_id, a, b = race
        outcomes = self._run_pair(
            lambda: manager.remove_member(a, org_id, a),
            lambda: manager.remove_member(b, org_id, b),
        )
        assert outcomes == ["last_owner", "ok"]
        assert file_store.count_owners(org_id) == 1

    def test_owners_demoting_each_other(self, race) -> None:
        file_store, manager, org_id, a, b = race
        outcomes = self._run_pair(
            lambda: manager.update_member_role(a, org_id, b, Role.member),
            lambda: manager.update_member_role(b, org_id, a, Role.member),
        )
        assert outcomes == ["last_owner", "ok"]
        assert file_store.count_owners(org_id) == 1
