"""
auth/sessions.py -- SessionManager: issue, validate, refresh and revoke sessions.

Lifecycle of a session:

    Created --> Active <--> Refreshed
                  |
                  +--> Expired   (terminal; now > expires_at)
                  +--> Revoked   (terminal; sign-out or explicit revocation)

SessionManager is the only writer of session state. Validity is re-derived
from the stored row on every validate() call and never cached.

Tokens:
  secrets.token_urlsafe(32) -- 256 bits of entropy. The store only ever sees
  HMAC-SHA256(SECRET_KEY, token), so a database dump holds no usable tokens
  and lookup stays an indexed equality match. The token value never changes
  for the lifetime of a session; refresh only moves expires_at/last_seen_at.

Sliding refresh:
  When enabled and more than session_refresh_fraction of the max age has
  elapsed since last_seen_at, validate() extends expiry to now + max age
  (capped by session_absolute_max_age_seconds when set). The store applies
  the extension with a conditional UPDATE that only moves expiry forward, so
  concurrent validations of one token cannot shorten it.

Expired sessions are marked revoked when a validate() notices them. That
write is an optimization; correctness never depends on it or on the reaper.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta

from auth.errors import Forbidden, SessionExpired, SessionNotFound, SessionRevoked, TransientStorageError
from auth.models import Session
from auth.organizations import MembershipResolver
from auth.repository import AuthRepository
from core.clock import Clock, SystemClock
from core.config import Settings

logger = logging.getLogger("authcore.sessions")


def generate_token() -> str:
    """Return a new opaque session token (256 bits, URL-safe)."""
    return secrets.token_urlsafe(32)


def hash_token(token: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, token) as hex -- the form tokens are stored in."""
    return hmac.new(secret_key.encode(), token.encode(), hashlib.sha256).hexdigest()


class SessionManager:
    def __init__(
        self,
        repository: AuthRepository,
        settings: Settings,
        resolver: MembershipResolver,
        clock: Clock | None = None,
    ) -> None:
        self._repo = repository
        self._settings = settings
        self._resolver = resolver
        self._clock = clock or SystemClock()

    @property
    def max_age(self) -> timedelta:
        return timedelta(seconds=self._settings.session_max_age_seconds)

    def _hash(self, token: str) -> str:
        return hash_token(token, self._settings.secret_key)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def issue(
        self,
        user_id: str,
        organization_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        """Create a session for user_id and return it with its token populated.

        An initial organization is only accepted if the user is a member of
        it; otherwise Forbidden.
        """
        if organization_id is not None and not self._resolver.has_access(user_id, organization_id):
            raise Forbidden()
        now = self._clock.now()
        token = generate_token()
        session = Session(
            user_id=user_id,
            active_organization_id=organization_id,
            created_at=now,
            last_seen_at=now,
            expires_at=now + self.max_age,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        session = self._repo.create_session(session, self._hash(token))
        session.token = token
        logger.info("Issued session %s for user %s", session.id, user_id)
        return session

    def validate(self, token: str) -> Session:
        """Return the live session for token, refreshing it if due.

        Raises SessionNotFound, SessionRevoked or SessionExpired, checked in
        that order.
        """
        token_hash = self._hash(token)
        session = self._repo.find_session_by_token_hash(token_hash)
        if session is None:
            raise SessionNotFound()
        if session.revoked:
            raise SessionRevoked()

        now = self._clock.now()
        if session.is_expired(now):
            self._mark_expired(session, token_hash)
            raise SessionExpired()

        session.token = token
        if self._refresh_due(session, now):
            new_expiry = self._refreshed_expiry(session, now)
            if new_expiry > session.expires_at and self._repo.extend_session(token_hash, new_expiry, now):
                session.expires_at = new_expiry
                session.last_seen_at = now
                logger.debug("Refreshed session %s until %s", session.id, new_expiry.isoformat())
        return session

    def revoke(self, token: str) -> None:
        """Revoke the session for token. Unknown or already-revoked tokens are a no-op."""
        if self._repo.revoke_session(self._hash(token)):
            logger.info("Revoked session")

    def switch_organization(self, token: str, organization_id: str | None) -> Session:
        """Set (or clear, with None) the session's active organization.

        Raises the validate() errors, or Forbidden when the user has no
        membership in organization_id.
        """
        session = self.validate(token)
        if organization_id is not None and not self._resolver.has_access(session.user_id, organization_id):
            logger.info("User %s denied switch to organization %s", session.user_id, organization_id)
            raise Forbidden()
        if not self._repo.set_active_organization(self._hash(token), organization_id):
            # Revoked between validate() and the update.
            raise SessionRevoked()
        session.active_organization_id = organization_id
        return session

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    def list_active(self, user_id: str) -> list[Session]:
        """Return the user's live sessions. Tokens are not included."""
        return self._repo.list_sessions_for_user(user_id, self._clock.now())

    def revoke_all(self, user_id: str, except_token: str | None = None) -> int:
        """Revoke every live session of user_id, optionally keeping except_token's."""
        except_hash = self._hash(except_token) if except_token is not None else None
        count = self._repo.revoke_sessions_for_user(user_id, except_hash)
        logger.info("Revoked %d session(s) for user %s", count, user_id)
        return count

    def purge_expired(self) -> int:
        """Delete expired session rows. Storage hygiene for the background reaper."""
        return self._repo.purge_sessions(self._clock.now())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _refresh_due(self, session: Session, now: datetime) -> bool:
        if not self._settings.session_sliding_refresh:
            return False
        threshold = self.max_age * self._settings.session_refresh_fraction
        return now - session.last_seen_at > threshold

    def _refreshed_expiry(self, session: Session, now: datetime) -> datetime:
        expiry = now + self.max_age
        absolute = self._settings.session_absolute_max_age_seconds
        if absolute:
            expiry = min(expiry, session.created_at + timedelta(seconds=absolute))
        return expiry

    def _mark_expired(self, session: Session, token_hash: str) -> None:
        try:
            self._repo.revoke_session(token_hash)
        except TransientStorageError:
            logger.debug("Could not mark expired session %s revoked", session.id)
