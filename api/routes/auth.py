"""
api/routes/auth.py -- Sign-up, sign-in, session and sign-out endpoints.

Routes:
  POST /api/auth/sign-up/email          -- register + auto sign-in; sets session cookie
  POST /api/auth/sign-in/email          -- password sign-in; sets session cookie
  GET  /api/auth/get-session            -- current session, user and org context
  POST /api/auth/sign-out               -- revoke session; clears cookie; always 200
  POST /api/auth/change-password        -- requires session; revokes other sessions by default
  GET  /api/auth/list-sessions          -- requires session
  POST /api/auth/revoke-other-sessions  -- requires session

Handlers that hash passwords are plain `def`, so Starlette runs them in its
worker thread pool and the argon2 work never blocks the event loop.

Errors are not handled here: AuthCoreError subclasses propagate to the
exception handler in api/main.py, which maps them to status codes with one
JSON envelope.

Security:
  sign-in and sign-up are rate-limited per client IP.
  Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit, signup_limit
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    MessageResponse,
    RevokedResponse,
    SessionContextResponse,
    SessionResponse,
    SignInRequest,
    SignUpRequest,
    UserResponse,
)
from auth.dependencies import (
    clear_session_cookie,
    extract_token,
    get_auth,
    get_session_context,
    require_token,
    set_session_cookie,
)
from auth.models import AuthResult, SessionContext
from core.config import Settings

router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(signup_limit)
@router.post("/auth/sign-up/email", response_model=AuthResponse)
def sign_up(request: Request, body: SignUpRequest) -> JSONResponse:
    """Register with name, email and password, then sign in immediately."""
    result = get_auth(request).sign_up(
        body.name,
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _auth_response(result, request.app.state.settings)


@limiter.limit(login_limit)
@router.post("/auth/sign-in/email", response_model=AuthResponse)
def sign_in(request: Request, body: SignInRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Wrong password and unknown email produce the same 401 body.
    """
    result = get_auth(request).sign_in(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _auth_response(result, request.app.state.settings)


@router.post("/auth/sign-out", response_model=MessageResponse)
def sign_out(request: Request) -> JSONResponse:
    """Revoke the current session (if any) and clear the cookie."""
    token = extract_token(request)
    if token is not None:
        get_auth(request).sign_out(token)
    resp = JSONResponse(content=MessageResponse(message="Signed out.").model_dump())
    clear_session_cookie(resp, request.app.state.settings)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/get-session", response_model=SessionContextResponse)
def get_session(
    request: Request,
    response: Response,
    ctx: SessionContext = Depends(get_session_context),
) -> SessionContextResponse:
    """Return the current session with its user and organization context.

    When the token came from the cookie, the cookie is re-sent so its max age
    slides with the server-side expiry.
    """
    settings: Settings = request.app.state.settings
    if request.cookies.get(settings.session_cookie_name) and ctx.session.token:
        set_session_cookie(response, ctx.session.token, settings)
    response.headers["Cache-Control"] = "no-store"
    return SessionContextResponse.from_domain(ctx)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(request: Request, body: ChangePasswordRequest) -> MessageResponse:
    """Change the signed-in user's password. Other sessions are revoked unless asked not to."""
    get_auth(request).change_password(
        require_token(request),
        body.current_password,
        body.new_password,
        revoke_other_sessions=body.revoke_other_sessions,
    )
    return MessageResponse(message="Password changed.")


@router.get("/auth/list-sessions", response_model=list[SessionResponse])
def list_sessions(
    request: Request,
    ctx: SessionContext = Depends(get_session_context),
) -> list[SessionResponse]:
    """List the user's live sessions; the requesting one is flagged current."""
    sessions = get_auth(request).sessions.list_active(ctx.user.id)
    return [SessionResponse.from_domain(s, current_id=ctx.session.id) for s in sessions]


@router.post("/auth/revoke-other-sessions", response_model=RevokedResponse)
def revoke_other_sessions(request: Request) -> RevokedResponse:
    """Sign out everywhere except here."""
    count = get_auth(request).revoke_other_sessions(require_token(request))
    return RevokedResponse(revoked=count)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _auth_response(result: AuthResult, settings: Settings) -> JSONResponse:
    body = AuthResponse(
        token=result.session.token,
        user=UserResponse.from_domain(result.user),
        session=SessionResponse.from_domain(result.session, current_id=result.session.id),
    )
    resp = JSONResponse(status_code=200, content=body.model_dump(mode="json"))
    set_session_cookie(resp, result.session.token, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp
