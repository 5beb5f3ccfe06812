"""
auth/orchestrator.py -- AuthOrchestrator: the public face of the auth core.

Composes CredentialStore, SessionManager and MembershipResolver into the
user-facing operations:

  sign_up(name, email, password)    -> AuthResult      (auto-login)
  sign_in(email, password)          -> AuthResult
  validate_session(token)           -> SessionContext
  sign_out(token)                   -> None            (always succeeds)

plus switch_organization, change_password, list_sessions,
revoke_other_sessions, and the operator actions mark_email_verified,
ban_user and unban_user.

Error boundary:
  Credential failures leave here as a plain AuthenticationError and session
  failures (not found / expired / revoked) as Unauthenticated. The precise
  internal kind is logged and then dropped, so a caller cannot learn which
  check failed. Validation, conflict, authorization and storage errors pass
  through unchanged.

Configuration is the Settings instance given to the constructor; nothing
here reads ambient global state.
"""

from __future__ import annotations

import logging

from auth.credentials import CredentialStore
from auth.errors import (
    AuthenticationError,
    EmailNotVerified,
    InternalError,
    RegistrationDisabled,
    Unauthenticated,
    UserBanned,
    ValidationError,
)
from auth.models import AuthResult, Session, SessionContext, UserIdentity
from auth.organizations import MembershipResolver, OrganizationManager
from auth.repository import AuthRepository
from auth.sessions import SessionManager
from core.clock import Clock
from core.config import Settings

logger = logging.getLogger("authcore.orchestrator")


class AuthOrchestrator:
    """Wire the auth components around one repository and one Settings value.

    Usage:
        auth = AuthOrchestrator(AuthStore.from_settings(settings), settings)
        result = auth.sign_up("Ann", "ann@x.com", "password1")
        ctx = auth.validate_session(result.session.token)
        auth.sign_out(result.session.token)
    """

    def __init__(self, repository: AuthRepository, settings: Settings, clock: Clock | None = None) -> None:
        self.settings = settings
        self.repository = repository
        self.memberships = MembershipResolver(repository)
        self.credentials = CredentialStore(repository, settings)
        self.sessions = SessionManager(repository, settings, self.memberships, clock=clock)
        self.organizations = OrganizationManager(repository, settings, self.memberships)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def sign_up(
        self,
        name: str,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Register a user and sign them in.

        Raises RegistrationDisabled, InvalidEmail, WeakPassword or EmailTaken.
        """
        if not self.settings.self_registration_enabled:
            raise RegistrationDisabled()
        user = self.credentials.register(email, password, name=name)
        session = self.sessions.issue(user.id, ip_address=ip_address, user_agent=user_agent)
        return AuthResult(session=session, user=user)

    def sign_in(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthResult:
        """Verify credentials and issue a session. Any credential failure is AuthenticationError."""
        try:
            user = self.credentials.verify(email, password)
            if user.banned:
                raise UserBanned()
        except AuthenticationError as exc:
            logger.info("Sign-in failed (%s)", exc.code)
            raise AuthenticationError() from None
        if self.settings.require_email_verification and not user.email_verified:
            raise EmailNotVerified()
        session = self.sessions.issue(user.id, ip_address=ip_address, user_agent=user_agent)
        logger.info("User %s signed in (session %s)", user.id, session.id)
        return AuthResult(session=session, user=user)

    def validate_session(self, token: str) -> SessionContext:
        """Resolve a token to its session, user and current organization context.

        Raises Unauthenticated for every kind of unusable session.
        """
        session = self._validate(token)
        user = self.repository.find_user_by_id(session.user_id)
        if user is None:
            logger.info("Session %s belongs to missing user %s", session.id, session.user_id)
            raise Unauthenticated()
        if user.banned:
            logger.info("Session %s belongs to banned user %s", session.id, user.id)
            raise Unauthenticated()

        memberships = self.memberships.list_memberships(user.id)
        active_role = None
        if session.active_organization_id is not None:
            active = next((m for m in memberships if m.organization_id == session.active_organization_id), None)
            if active is None:
                # Membership ended after the switch. Report no org context rather than a stale one.
                logger.info(
                    "Session %s lost membership in organization %s",
                    session.id,
                    session.active_organization_id,
                )
                session.active_organization_id = None
            else:
                active_role = active.role
        return SessionContext(session=session, user=user, memberships=memberships, active_role=active_role)

    def sign_out(self, token: str) -> None:
        """Revoke the session. Succeeds for unknown and already-revoked tokens."""
        self.sessions.revoke(token)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def switch_organization(self, token: str, organization_id: str | None) -> Session:
        """Make organization_id the session's active organization (None clears it).

        Raises Unauthenticated for an unusable session, Forbidden without membership.
        """
        try:
            return self.sessions.switch_organization(token, organization_id)
        except AuthenticationError as exc:
            logger.info("Organization switch on unusable session (%s)", exc.code)
            raise Unauthenticated() from None

    def list_sessions(self, token: str) -> list[Session]:
        session = self._validate(token)
        return self.sessions.list_active(session.user_id)

    def revoke_other_sessions(self, token: str) -> int:
        """Revoke every session of the token's user except this one."""
        session = self._validate(token)
        return self.sessions.revoke_all(session.user_id, except_token=token)

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def change_password(
        self,
        token: str,
        current_password: str,
        new_password: str,
        revoke_other_sessions: bool = True,
    ) -> None:
        """Change the signed-in user's password, by default ending their other sessions."""
        session = self._validate(token)
        try:
            self.credentials.change_password(session.user_id, current_password, new_password)
        except AuthenticationError:
            raise AuthenticationError() from None
        if revoke_other_sessions:
            self.sessions.revoke_all(session.user_id, except_token=token)

    def mark_email_verified(self, user_id: str) -> UserIdentity:
        """Flag a user's email as verified. Delivery of the proof is outside the core."""
        if not self.repository.set_email_verified(user_id, True):
            raise ValidationError("No such user.")
        user = self.repository.find_user_by_id(user_id)
        if user is None:
            raise InternalError(f"user {user_id} vanished after update")
        return user

    def ban_user(self, user_id: str) -> int:
        """Bar a user from signing in and end all their sessions. Returns the number revoked."""
        if not self.repository.set_banned(user_id, True):
            raise ValidationError("No such user.")
        revoked = self.sessions.revoke_all(user_id)
        logger.warning("User %s banned (%d session(s) revoked)", user_id, revoked)
        return revoked

    def unban_user(self, user_id: str) -> None:
        if not self.repository.set_banned(user_id, False):
            raise ValidationError("No such user.")
        logger.info("User %s unbanned", user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate(self, token: str) -> Session:
        try:
            return self.sessions.validate(token)
        except AuthenticationError as exc:
            # Internal distinction is for logs only.
            logger.info("Session rejected (%s)", exc.code)
            raise Unauthenticated() from None
