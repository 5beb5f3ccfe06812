"""
auth/passwords.py -- Password hashing algorithms.

Each hasher turns a plaintext password into a PasswordRecord (algorithm id,
parameters, salt, digest) and verifies a plaintext against one. The record
is split into its parts so the algorithm id can select a hasher at verify
time; the parts are re-joined into the library's own encoded form before
calling it.

  argon2id (argon2-cffi): default for new hashes. Memory-hard, so GPU/ASIC
      brute force of a leaked table is expensive in memory, not just time.

  bcrypt: verified for records written by earlier deployments and available
      as an explicit choice. bcrypt only looks at the first 72 bytes of
      input and the current library rejects longer input outright, so the
      hasher advertises max_password_bytes and CredentialStore enforces it
      as part of the password policy.

Both verify() methods return False on any mismatch or malformed record; they
never raise for bad input.
"""

from __future__ import annotations

from typing import Protocol

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from auth.models import PasswordRecord
from core.config import Settings


class Hasher(Protocol):
    algorithm: str
    max_password_bytes: int | None

    def hash(self, plain: str) -> PasswordRecord: ...

    def verify(self, record: PasswordRecord, plain: str) -> bool: ...

    def needs_rehash(self, record: PasswordRecord) -> bool: ...


class Argon2Hasher:
    algorithm = "argon2id"
    max_password_bytes = None

    def __init__(self, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4) -> None:
        self._ph = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plain: str) -> PasswordRecord:
        # $argon2id$v=19$m=65536,t=3,p=4$<salt>$<digest>
        _, algorithm, version, params, salt, digest = self._ph.hash(plain).split("$")
        return PasswordRecord(algorithm=algorithm, params=f"{version}${params}", salt=salt, digest=digest)

    def verify(self, record: PasswordRecord, plain: str) -> bool:
        try:
            return self._ph.verify(_encode_argon2(record), plain)
        except (VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, record: PasswordRecord) -> bool:
        try:
            return self._ph.check_needs_rehash(_encode_argon2(record))
        except InvalidHashError:
            return True


class BcryptHasher:
    algorithm = "bcrypt"
    max_password_bytes = 72

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds

    def hash(self, plain: str) -> PasswordRecord:
        # $2b$12$<22-char salt><31-char digest>
        encoded = bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")
        _, variant, rounds, rest = encoded.split("$")
        return PasswordRecord(algorithm=self.algorithm, params=f"{variant}${rounds}", salt=rest[:22], digest=rest[22:])

    def verify(self, record: PasswordRecord, plain: str) -> bool:
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), _encode_bcrypt(record).encode("utf-8"))
        except ValueError:
            # Malformed stored hash, or input past bcrypt's 72-byte limit.
            return False

    def needs_rehash(self, record: PasswordRecord) -> bool:
        try:
            return int(record.params.split("$")[1]) != self.rounds
        except (IndexError, ValueError):
            return True


def _encode_argon2(record: PasswordRecord) -> str:
    return f"${record.algorithm}${record.params}${record.salt}${record.digest}"


def _encode_bcrypt(record: PasswordRecord) -> str:
    return f"${record.params}${record.salt}{record.digest}"


def build_hashers(settings: Settings) -> dict[str, Hasher]:
    """Return every supported hasher keyed by algorithm id, configured from settings."""
    return {
        Argon2Hasher.algorithm: Argon2Hasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        ),
        BcryptHasher.algorithm: BcryptHasher(rounds=settings.bcrypt_rounds),
    }
