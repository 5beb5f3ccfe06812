"""
auth/errors.py -- Error taxonomy for the auth core.

Families (what a caller should do):
  ValidationError        -- malformed input; show the message, do not retry
  ConflictError          -- uniqueness violation (email, slug, membership)
  AuthenticationError    -- bad credentials or unusable session; re-authenticate
  AuthorizationError     -- authenticated but not allowed
  TransientStorageError  -- persistence timeout/unavailable; safe to retry with backoff
  InternalError          -- invariant violation; always logged, never retried

CredentialStore and SessionManager raise the precise subclasses
(SessionExpired, InvalidCredentials, ...). AuthOrchestrator collapses the
AuthenticationError family to a generic instance at its public boundary so
callers cannot tell which check failed.

Every error carries a stable machine code and a message that is safe to
show an end user.
"""

from __future__ import annotations


class AuthCoreError(Exception):
    code = "auth_error"
    message = "Authentication service error."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(AuthCoreError):
    code = "validation_error"
    message = "The request was invalid."


class WeakPassword(ValidationError):
    code = "weak_password"
    message = "Password does not meet the length requirements."


class InvalidEmail(ValidationError):
    code = "invalid_email"
    message = "Email address is not valid."


class InvalidSlug(ValidationError):
    code = "invalid_slug"
    message = "Organization slug is not valid."


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------


class ConflictError(AuthCoreError):
    code = "conflict"
    message = "The resource already exists."


class EmailTaken(ConflictError):
    code = "email_taken"
    message = "An account with that email already exists."


class SlugTaken(ConflictError):
    code = "slug_taken"
    message = "An organization with that slug already exists."


class AlreadyMember(ConflictError):
    code = "already_member"
    message = "User is already a member of this organization."


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthenticationError(AuthCoreError):
    code = "unauthenticated"
    message = "Invalid email or password."


class InvalidCredentials(AuthenticationError):
    code = "invalid_credentials"


class Unauthenticated(AuthenticationError):
    """The single public outcome for any unusable session."""

    code = "unauthenticated"
    message = "Authentication required."


class SessionNotFound(AuthenticationError):
    code = "session_not_found"
    message = "Authentication required."


class SessionExpired(AuthenticationError):
    code = "session_expired"
    message = "Authentication required."


class SessionRevoked(AuthenticationError):
    code = "session_revoked"
    message = "Authentication required."


class UserBanned(AuthenticationError):
    code = "user_banned"


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class AuthorizationError(AuthCoreError):
    code = "forbidden"
    message = "You do not have access to this resource."


class Forbidden(AuthorizationError):
    pass


class RegistrationDisabled(AuthorizationError):
    code = "registration_disabled"
    message = "Self-registration is disabled."


class EmailNotVerified(AuthorizationError):
    code = "email_not_verified"
    message = "Email address has not been verified."


class LastOwner(AuthorizationError):
    code = "last_owner"
    message = "An organization must keep at least one owner."


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class TransientStorageError(AuthCoreError):
    code = "storage_unavailable"
    message = "The service is temporarily unavailable. Please retry."


class InternalError(AuthCoreError):
    code = "internal_error"
    message = "An unexpected error occurred."
