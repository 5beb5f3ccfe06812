"""
api/routes/organizations.py -- Organization and membership endpoints.

Routes (all require a valid session):
  POST /api/auth/organization/create              -- caller becomes owner
  POST /api/auth/organization/set-active          -- switch the session's active org (null clears)
  GET  /api/auth/organization/list                -- caller's memberships
  POST /api/auth/organization/add-member          -- admin/owner only
  POST /api/auth/organization/update-member-role  -- admin/owner only; owner rules apply
  POST /api/auth/organization/remove-member       -- admin/owner, or the member themself

Authorization decisions live in OrganizationManager / MembershipResolver,
not here; Forbidden and LastOwner propagate to the 403 handler.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    MemberRequest,
    MembershipResponse,
    MessageResponse,
    OrganizationCreate,
    OrganizationResponse,
    RemoveMemberRequest,
    SessionResponse,
    SetActiveOrganizationRequest,
)
from auth.dependencies import get_auth, get_session_context, require_token
from auth.models import Role, SessionContext

router = APIRouter()


@router.post("/auth/organization/create", response_model=OrganizationResponse, status_code=201)
def create_organization(
    request: Request,
    body: OrganizationCreate,
    ctx: SessionContext = Depends(get_session_context),
) -> OrganizationResponse:
    organization = get_auth(request).organizations.create_organization(ctx.user.id, body.name, body.slug)
    return OrganizationResponse.from_domain(organization)


@router.post("/auth/organization/set-active", response_model=SessionResponse)
def set_active_organization(request: Request, body: SetActiveOrganizationRequest) -> SessionResponse:
    """Make an organization the session's active context. 403 without membership."""
    session = get_auth(request).switch_organization(require_token(request), body.organization_id)
    return SessionResponse.from_domain(session, current_id=session.id)


@router.get("/auth/organization/list", response_model=list[MembershipResponse])
def list_organizations(ctx: SessionContext = Depends(get_session_context)) -> list[MembershipResponse]:
    return [MembershipResponse.from_domain(m) for m in ctx.memberships]


@router.post("/auth/organization/add-member", response_model=MembershipResponse, status_code=201)
def add_member(
    request: Request,
    body: MemberRequest,
    ctx: SessionContext = Depends(get_session_context),
) -> MembershipResponse:
    membership = get_auth(request).organizations.add_member(
        ctx.user.id, body.organization_id, body.user_id, Role(body.role.value)
    )
    return MembershipResponse.from_domain(membership)


@router.post("/auth/organization/update-member-role", response_model=MembershipResponse)
def update_member_role(
    request: Request,
    body: MemberRequest,
    ctx: SessionContext = Depends(get_session_context),
) -> MembershipResponse:
    membership = get_auth(request).organizations.update_member_role(
        ctx.user.id, body.organization_id, body.user_id, Role(body.role.value)
    )
    return MembershipResponse.from_domain(membership)


@router.post("/auth/organization/remove-member", response_model=MessageResponse)
def remove_member(
    request: Request,
    body: RemoveMemberRequest,
    ctx: SessionContext = Depends(get_session_context),
) -> MessageResponse:
    get_auth(request).organizations.remove_member(ctx.user.id, body.organization_id, body.user_id)
    return MessageResponse(message="Member removed.")
