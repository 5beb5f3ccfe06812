"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data containers, almost no logic). Stores own the
mapping to rows; CredentialStore / SessionManager / AuthOrchestrator do the
work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of organization roles, ordered owner > admin > member."""

    owner = "owner"
    admin = "admin"
    member = "member"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def at_least(self, minimum: Role) -> bool:
        return self.rank >= minimum.rank


_ROLE_RANK = {Role.member: 1, Role.admin: 2, Role.owner: 3}


@dataclass
class UserIdentity:
    """A registered user.

    email is stored lowercased and is the sign-in key. A banned user can
    neither sign in nor use an existing session. There is deliberately
    no password field: the hash lives in a PasswordRecord that only
    CredentialStore reads.
    """

    email: str
    name: str = ""
    id: str | None = None
    email_verified: bool = False
    banned: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class PasswordRecord:
    """Salted one-way hash of a password.

    algorithm: "argon2id" or "bcrypt"
    params:    algorithm parameters in the algorithm's own notation
               (e.g. "v=19$m=65536,t=3,p=4" for argon2, "2b$12" for bcrypt)
    salt/digest: encoded exactly as the algorithm emits them
    """

    algorithm: str
    params: str
    salt: str
    digest: str

    def __repr__(self) -> str:
        # Keeps digests out of logs and tracebacks.
        return f"PasswordRecord(algorithm={self.algorithm!r}, params={self.params!r})"


@dataclass
class Session:
    """An authenticated session.

    token is only populated on objects handed to the party that holds the
    token (issue / validate). Sessions loaded for listing carry token=None;
    id is the stable handle used there.
    """

    user_id: str
    expires_at: datetime
    created_at: datetime
    last_seen_at: datetime
    id: str | None = None
    token: str | None = None
    active_organization_id: str | None = None
    revoked: bool = False
    ip_address: str | None = None
    user_agent: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class Organization:
    name: str
    slug: str
    id: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class OrganizationMembership:
    user_id: str
    organization_id: str
    role: Role
    joined_at: datetime | None = field(default=None, compare=False)


@dataclass
class AuthResult:
    """Outcome of sign-up / sign-in: the new session and its user."""

    session: Session
    user: UserIdentity


@dataclass
class SessionContext:
    """Outcome of validate_session.

    active_role is the user's role in session.active_organization_id, or
    None when no organization is active (or the membership has since been
    removed, in which case the active organization is also reported as None).
    """

    session: Session
    user: UserIdentity
    memberships: list[OrganizationMembership]
    active_role: Role | None = None
