"""
auth/organizations.py -- Organization membership: resolution and management.

MembershipResolver answers "is this user in this organization, and as what?"
It is read-only and never defaults to access: a missing membership row means
no access, full stop. SessionManager.switch_organization and any downstream
authorization check go through it.

OrganizationManager is the writer: it creates organizations and adds,
re-roles and removes members under these rules:
  - Only owners and admins manage members.
  - Only owners can grant the owner role or modify an owner.
  - An organization always keeps at least one owner. The store enforces
    this atomically and raises LastOwner.
  - Members must be existing users.
  - Members may remove themselves (leave), subject to the owner rule.
  - When a membership ends, the user's sessions drop that organization as
    their active context.
"""

from __future__ import annotations

import logging
import re

from auth.errors import Forbidden, InvalidSlug, ValidationError
from auth.models import Organization, OrganizationMembership, Role
from auth.repository import AuthRepository
from core.config import Settings

logger = logging.getLogger("authcore.organizations")

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


class MembershipResolver:
    def __init__(self, repository: AuthRepository) -> None:
        self._repo = repository

    def memberships_for(self, user_id: str) -> set[tuple[str, Role]]:
        """Return {(organization_id, role)} for every organization the user belongs to."""
        return {(m.organization_id, m.role) for m in self._repo.list_memberships(user_id)}

    def list_memberships(self, user_id: str) -> list[OrganizationMembership]:
        return self._repo.list_memberships(user_id)

    def has_access(self, user_id: str, organization_id: str) -> bool:
        return self._repo.find_membership(user_id, organization_id) is not None

    def role_in(self, user_id: str, organization_id: str) -> Role | None:
        membership = self._repo.find_membership(user_id, organization_id)
        return membership.role if membership is not None else None

    def require_role(self, user_id: str, organization_id: str, minimum: Role = Role.member) -> Role:
        """Return the user's role, or raise Forbidden if absent or below minimum."""
        role = self.role_in(user_id, organization_id)
        if role is None or not role.at_least(minimum):
            raise Forbidden()
        return role


class OrganizationManager:
    def __init__(self, repository: AuthRepository, settings: Settings, resolver: MembershipResolver) -> None:
        self._repo = repository
        self._settings = settings
        self._resolver = resolver

    def create_organization(self, creator_id: str, name: str, slug: str) -> Organization:
        """Create an organization with creator_id as its first owner.

        Raises Forbidden when user-created organizations are disabled,
        ValidationError/InvalidSlug on bad input, SlugTaken on a duplicate.
        """
        if not self._settings.allow_user_organizations:
            raise Forbidden("Creating organizations is disabled.")
        name = name.strip()
        if not name or len(name) > 255:
            raise ValidationError("Organization name must be between 1 and 255 characters.")
        slug = slug.strip().lower()
        if not SLUG_PATTERN.match(slug) or len(slug) > 100:
            raise InvalidSlug("Slug may only contain lowercase letters, digits and single hyphens.")
        if slug in self._settings.forbidden_organization_slugs:
            raise InvalidSlug("That slug is reserved.")
        organization = self._repo.create_organization(Organization(name=name, slug=slug), owner_id=creator_id)
        logger.info("User %s created organization %s (%s)", creator_id, organization.id, slug)
        return organization

    def add_member(
        self, actor_id: str, organization_id: str, user_id: str, role: Role = Role.member
    ) -> OrganizationMembership:
        role = Role(role)
        actor_role = self._resolver.require_role(actor_id, organization_id, Role.admin)
        if role is Role.owner and actor_role is not Role.owner:
            raise Forbidden("Only owners can add owners.")
        if self._repo.find_user_by_id(user_id) is None:
            raise ValidationError("No such user.")
        membership = self._repo.add_membership(
            OrganizationMembership(user_id=user_id, organization_id=organization_id, role=role)
        )
        logger.info("User %s added %s to organization %s as %s", actor_id, user_id, organization_id, role.value)
        return membership

    def update_member_role(
        self, actor_id: str, organization_id: str, user_id: str, role: Role
    ) -> OrganizationMembership:
        role = Role(role)
        actor_role = self._resolver.require_role(actor_id, organization_id, Role.admin)
        current = self._repo.find_membership(user_id, organization_id)
        if current is None:
            raise Forbidden("User is not a member of this organization.")
        if actor_role is not Role.owner and Role.owner in (current.role, role):
            raise Forbidden("Only owners can change owner roles.")
        if not self._repo.update_membership_role(user_id, organization_id, role):
            raise Forbidden("User is not a member of this organization.")
        logger.info("User %s changed %s in organization %s to %s", actor_id, user_id, organization_id, role.value)
        return OrganizationMembership(
            user_id=user_id, organization_id=organization_id, role=role, joined_at=current.joined_at
        )

    def remove_member(self, actor_id: str, organization_id: str, user_id: str) -> None:
        current = self._repo.find_membership(user_id, organization_id)
        if current is None:
            raise Forbidden("User is not a member of this organization.")
        if actor_id != user_id:
            actor_role = self._resolver.require_role(actor_id, organization_id, Role.admin)
            if current.role is Role.owner and actor_role is not Role.owner:
                raise Forbidden("Only owners can remove owners.")
        if not self._repo.remove_membership(user_id, organization_id):
            raise Forbidden("User is not a member of this organization.")
        cleared = self._repo.clear_active_organization(user_id, organization_id)
        logger.info(
            "User %s removed %s from organization %s (%d session(s) cleared)",
            actor_id,
            user_id,
            organization_id,
            cleared,
        )
