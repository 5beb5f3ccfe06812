"""
API request and response models for the AuthCore HTTP adapter.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. The from_domain() factories keep the mapping
next to the output model rather than scattered across route handlers.

Password hashes and session tokens of other sessions never appear in any
response model.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Organization, OrganizationMembership, Session, SessionContext, UserIdentity

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    owner = "owner"
    admin = "admin"
    member = "member"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignUpRequest(BaseModel):
    """Body for POST /api/auth/sign-up/email.

    Length caps here are transport hygiene (keep oversized payloads away from
    the hasher). The real password policy lives in CredentialStore.
    Passwords are taken verbatim; whitespace is significant.
    """

    name: str = Field(default="", max_length=255)
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=255)


class SignInRequest(BaseModel):
    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=255)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)
    revoke_other_sessions: bool = True


class OrganizationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    slug: str = Field(min_length=1, max_length=100)


class SetActiveOrganizationRequest(BaseModel):
    """organization_id=None clears the active organization."""

    organization_id: Optional[str] = None


class MemberRequest(BaseModel):
    organization_id: str = Field(min_length=1, max_length=32)
    user_id: str = Field(min_length=1, max_length=32)
    role: RoleEnum = RoleEnum.member


class RemoveMemberRequest(BaseModel):
    organization_id: str = Field(min_length=1, max_length=32)
    user_id: str = Field(min_length=1, max_length=32)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    email_verified: bool
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, user: UserIdentity) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            email_verified=user.email_verified,
            created_at=user.created_at,
        )


class SessionResponse(BaseModel):
    """One session. `current` marks the session making the request in listings."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    active_organization_id: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    last_seen_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False

    @classmethod
    def from_domain(cls, session: Session, current_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            user_id=session.user_id,
            active_organization_id=session.active_organization_id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            last_seen_at=session.last_seen_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            current=current_id is not None and session.id == current_id,
        )


class AuthResponse(BaseModel):
    """Response for sign-up and sign-in.

    token is also set as an HttpOnly cookie; it is returned in the body for
    non-browser clients that send it as a Bearer header instead.
    """

    model_config = ConfigDict(frozen=True)

    token: str
    user: UserResponse
    session: SessionResponse


class MembershipResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: str
    role: RoleEnum
    joined_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, membership: OrganizationMembership) -> "MembershipResponse":
        return cls(
            organization_id=membership.organization_id,
            role=RoleEnum(membership.role.value),
            joined_at=membership.joined_at,
        )


class SessionContextResponse(BaseModel):
    """Response for GET /api/auth/get-session."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    session: SessionResponse
    memberships: list[MembershipResponse]
    active_role: Optional[RoleEnum] = None

    @classmethod
    def from_domain(cls, ctx: SessionContext) -> "SessionContextResponse":
        return cls(
            user=UserResponse.from_domain(ctx.user),
            session=SessionResponse.from_domain(ctx.session, current_id=ctx.session.id),
            memberships=[MembershipResponse.from_domain(m) for m in ctx.memberships],
            active_role=RoleEnum(ctx.active_role.value) if ctx.active_role is not None else None,
        )


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    slug: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, organization: Organization) -> "OrganizationResponse":
        return cls(
            id=organization.id,
            name=organization.name,
            slug=organization.slug,
            created_at=organization.created_at,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class RevokedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
