"""
auth/credentials.py -- CredentialStore: register, verify and change passwords.

The only module that sees PasswordRecord values. Everything it returns is a
UserIdentity, which has no password field.

Timing equalization:
  verify() always runs exactly one full hash verification, whether or not the
  email exists. For an unknown email it verifies against a decoy record
  computed once at construction, so the first failed login is not slower
  than later ones. "No such user" and "wrong password" raise the same
  InvalidCredentials with the same message, after the same amount of work.

Hash agility:
  Records carry their algorithm id. A record written with a non-default
  algorithm (bcrypt from an older deployment) or outdated cost parameters is
  re-hashed with the current default after a successful verify.
"""

from __future__ import annotations

import logging
import re

from auth.errors import InvalidCredentials, InvalidEmail, TransientStorageError, WeakPassword
from auth.models import PasswordRecord, UserIdentity
from auth.passwords import Hasher, build_hashers
from auth.repository import AuthRepository
from core.config import Settings

logger = logging.getLogger("authcore.credentials")

# Deliberately permissive: one "@", no whitespace, a dot in the domain.
# Deliverability is proven by verification mail, not by a regex.
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_DECOY_PASSWORD = "authcore_timing_decoy"


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialStore:
    def __init__(
        self,
        repository: AuthRepository,
        settings: Settings,
        hashers: dict[str, Hasher] | None = None,
    ) -> None:
        self._repo = repository
        self._settings = settings
        self._hashers = hashers or build_hashers(settings)
        self._default = self._hashers[settings.password_hash_algorithm]
        self._decoy: PasswordRecord = self._default.hash(_DECOY_PASSWORD)

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def check_password_policy(self, password: str) -> None:
        """Raise WeakPassword unless the password fits the configured length bounds."""
        if len(password) < self._settings.password_min_length:
            raise WeakPassword(f"Password must be at least {self._settings.password_min_length} characters.")
        if len(password) > self._settings.password_max_length:
            raise WeakPassword(f"Password must be at most {self._settings.password_max_length} characters.")
        limit = self._default.max_password_bytes
        if limit is not None and len(password.encode("utf-8")) > limit:
            raise WeakPassword(f"Password must be at most {limit} bytes.")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str = "") -> UserIdentity:
        """Create a user with a freshly hashed password.

        Raises InvalidEmail, WeakPassword, or EmailTaken (from the repository's
        unique index -- there is no read-then-insert race to lose).
        """
        normalized = normalize_email(email)
        if not EMAIL_PATTERN.match(normalized) or len(normalized) > 255:
            raise InvalidEmail()
        self.check_password_policy(password)
        record = self._default.hash(password)
        user = self._repo.create_user(UserIdentity(email=normalized, name=name.strip()), record)
        logger.info("Registered user %s", user.id)
        return user

    def verify(self, email: str, password: str) -> UserIdentity:
        """Return the user whose email/password match, else raise InvalidCredentials."""
        found = self._repo.find_credentials(normalize_email(email))
        if found is None:
            # Equalize timing -- do NOT return before running the hash.
            self._default.verify(self._decoy, password)
            raise InvalidCredentials()

        user, record = found
        hasher = self._hashers.get(record.algorithm)
        if hasher is None:
            logger.error("User %s has a password record with unknown algorithm %r", user.id, record.algorithm)
            self._default.verify(self._decoy, password)
            raise InvalidCredentials()
        if not hasher.verify(record, password):
            raise InvalidCredentials()

        self._upgrade_if_needed(user, record, password)
        return user

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        """Replace a user's password after proving knowledge of the current one."""
        record = self._repo.find_password_record(user_id)
        if record is None:
            self._default.verify(self._decoy, current_password)
            raise InvalidCredentials()
        hasher = self._hashers.get(record.algorithm)
        if hasher is None or not hasher.verify(record, current_password):
            raise InvalidCredentials()
        self.check_password_policy(new_password)
        self._repo.update_password_record(user_id, self._default.hash(new_password))
        logger.info("Password changed for user %s", user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _upgrade_if_needed(self, user: UserIdentity, record: PasswordRecord, password: str) -> None:
        stale = record.algorithm != self._default.algorithm or self._default.needs_rehash(record)
        if not stale:
            return
        limit = self._default.max_password_bytes
        if limit is not None and len(password.encode("utf-8")) > limit:
            return
        try:
            self._repo.update_password_record(user.id, self._default.hash(password))
        except TransientStorageError:
            # The old record still verifies; the upgrade is retried on the next sign-in.
            logger.warning("Could not upgrade password hash for user %s", user.id)
            return
        logger.info("Upgraded password hash for user %s from %s", user.id, record.algorithm)
