"""
auth/repository.py -- The persistence boundary consumed by the auth core.

AuthStore (auth/store.py) is the SQLAlchemy implementation. Anything with
these methods can stand in for it; the core only ever talks to this shape.

Contract every implementation must honour:
  - create_user raises EmailTaken when the (lowercased) email exists.
    Uniqueness is enforced by the storage engine, not by a read-then-write.
  - extend_session only moves expiry forward: the write is conditional on
    the stored expiry being earlier than the new one and the row not being
    revoked. Returns False when the condition did not hold.
  - revoke_session is idempotent.
  - add_membership raises AlreadyMember on a duplicate (user, organization).
  - update_membership_role and remove_membership raise LastOwner rather than
    leave an organization without an owner. The check and the write are one
    atomic step, not a count followed by a separate write.
  - Timeouts / unavailability surface as TransientStorageError.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from auth.models import Organization, OrganizationMembership, PasswordRecord, Role, Session, UserIdentity


class AuthRepository(Protocol):
    # -- users ------------------------------------------------------------

    def create_user(self, user: UserIdentity, password: PasswordRecord) -> UserIdentity: ...

    def find_user_by_email(self, email: str) -> UserIdentity | None: ...

    def find_user_by_id(self, user_id: str) -> UserIdentity | None: ...

    def find_credentials(self, email: str) -> tuple[UserIdentity, PasswordRecord] | None: ...

    def find_password_record(self, user_id: str) -> PasswordRecord | None: ...

    def update_password_record(self, user_id: str, password: PasswordRecord) -> bool: ...

    def set_email_verified(self, user_id: str, verified: bool = True) -> bool: ...

    def set_banned(self, user_id: str, banned: bool = True) -> bool: ...

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session, token_hash: str) -> Session: ...

    def find_session_by_token_hash(self, token_hash: str) -> Session | None: ...

    def extend_session(self, token_hash: str, expires_at: datetime, last_seen_at: datetime) -> bool: ...

    def revoke_session(self, token_hash: str) -> bool: ...

    def set_active_organization(self, token_hash: str, organization_id: str | None) -> bool: ...

    def list_sessions_for_user(self, user_id: str, now: datetime) -> list[Session]: ...

    def revoke_sessions_for_user(self, user_id: str, except_token_hash: str | None = None) -> int: ...

    def clear_active_organization(self, user_id: str, organization_id: str) -> int: ...

    def purge_sessions(self, now: datetime) -> int: ...

    # -- organizations ----------------------------------------------------

    def create_organization(self, organization: Organization, owner_id: str) -> Organization: ...

    def find_organization(self, organization_id: str) -> Organization | None: ...

    def add_membership(self, membership: OrganizationMembership) -> OrganizationMembership: ...

    def update_membership_role(self, user_id: str, organization_id: str, role: Role) -> bool: ...

    def remove_membership(self, user_id: str, organization_id: str) -> bool: ...

    def count_owners(self, organization_id: str) -> int: ...

    def list_memberships(self, user_id: str) -> list[OrganizationMembership]: ...

    def find_membership(self, user_id: str, organization_id: str) -> OrganizationMembership | None: ...
