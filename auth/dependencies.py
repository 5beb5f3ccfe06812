"""
auth/dependencies.py -- FastAPI Depends() helpers and the session cookie.

Two token carriers are checked in priority order:
  1. Session cookie (Settings.session_cookie_name) -- set by sign-in / sign-up.
  2. Authorization: Bearer <token> header -- non-browser clients.

Both resolve through AuthOrchestrator.validate_session(), so a cookie and a
header token are subject to exactly the same expiry / revocation / refresh
rules.

get_session_context() raises Unauthenticated, which the API's exception
handler renders as 401.

Layer rule: this is the only module in auth/ that imports FastAPI. It does
not import from api/.
"""

from __future__ import annotations

from fastapi import Request, Response

from auth.errors import Unauthenticated
from auth.models import SessionContext
from auth.orchestrator import AuthOrchestrator
from core.config import Settings


def get_auth(request: Request) -> AuthOrchestrator:
    return request.app.state.auth


def extract_token(request: Request) -> str | None:
    """Return the session token carried by the request, if any."""
    settings: Settings = request.app.state.settings
    token = request.cookies.get(settings.session_cookie_name)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def get_session_context(request: Request) -> SessionContext:
    """Require a valid session. Raises Unauthenticated (HTTP 401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: SessionContext = Depends(get_session_context)): ...
    """
    token = extract_token(request)
    if token is None:
        raise Unauthenticated()
    return get_auth(request).validate_session(token)


def require_token(request: Request) -> str:
    """Return the raw session token or raise Unauthenticated."""
    token = extract_token(request)
    if token is None:
        raise Unauthenticated()
    return token


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response: Response, token: str, settings: Settings) -> None:
    """Write the session token as an HttpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POSTs (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true (production).
    max_age: the session max age, re-sent on each validated request so the
        cookie slides together with the server-side expiry.
    """
    response.set_cookie(
        settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_max_age_seconds,
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        path="/",
    )
