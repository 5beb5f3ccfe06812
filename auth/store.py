"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository (it satisfies
auth.repository.AuthRepository); the _row_to_* functions are the mappers.
Nothing outside this module touches SQL.

Concurrency:
  Every method is one short unit of work on its own connection. There is no
  application-level lock: state transitions that can race (session refresh,
  revocation, active-organization switch) are single conditional UPDATEs and
  report whether the condition held via rowcount.

  The last-owner rule is enforced the same way: demoting or removing an
  owner is a single guarded statement that only matches while another owner
  exists, run in one transaction with the owner rows locked where the
  backend supports it.

  Uniqueness (user email, organization slug, one membership per user/org) is
  enforced by UNIQUE indexes. IntegrityError is translated to the matching
  ConflictError, so two concurrent sign-ups for the same email cannot both win.

Timeouts and retries:
  Every connection carries a timeout (SQLite busy timeout, pool timeout and
  PostgreSQL connect/statement timeouts). OperationalError and pool timeouts
  are retried `retry_attempts` times, then raised as TransientStorageError.

Security:
  All queries use bound parameters. Session tokens are never stored; only
  their HMAC digest (see auth/sessions.py).

Time columns:
  Session times are stored as integer microseconds since the Unix epoch so
  the monotonic expiry comparison happens in SQL and datetimes round-trip
  exactly. User/organization/membership times are
  ISO 8601 text.
"""

from __future__ import annotations

import functools
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import AlreadyMember, EmailTaken, InternalError, LastOwner, SlugTaken, TransientStorageError
from auth.models import Organization, OrganizationMembership, PasswordRecord, Role, Session, UserIdentity
from core.config import Settings

logger = logging.getLogger("authcore.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # lowercased
    Column("name", String(255), nullable=False, server_default=""),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("banned", Integer, nullable=False, server_default="0"),
    Column("password_algorithm", String(20), nullable=False),
    Column("password_params", String(100), nullable=False),
    Column("password_salt", String(255), nullable=False),
    Column("password_digest", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", String(32), nullable=False, index=True),
    Column("active_organization_id", String(32)),
    Column("created_at", BigInteger, nullable=False),
    Column("expires_at", BigInteger, nullable=False),
    Column("last_seen_at", BigInteger, nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
)

_organizations = Table(
    "organizations",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(100), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
)

_memberships = Table(
    "memberships",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("organization_id", String(32), nullable=False),
    Column("role", String(10), nullable=False),
    Column("joined_at", String(32), nullable=False),
    UniqueConstraint("user_id", "organization_id", name="uq_membership_user_org"),
)


# ---------------------------------------------------------------------------
# Connection setup
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases silently keep "memory".
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _engine_options(db_url: str, timeout: float) -> tuple[dict, dict]:
    """Return (connect_args, engine kwargs) that bound every storage call by `timeout`."""
    connect_args: dict = {}
    engine_kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout  # busy timeout while another writer holds the lock
    else:
        engine_kwargs["pool_timeout"] = timeout
        engine_kwargs["pool_pre_ping"] = True
        if db_url.startswith("postgresql"):
            connect_args["connect_timeout"] = max(1, int(timeout))
            connect_args["options"] = f"-c statement_timeout={int(timeout * 1000)}"
    return connect_args, engine_kwargs


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def _to_epoch(value: datetime) -> int:
    return (value - _UNIX_EPOCH) // _MICROSECOND


def _from_epoch(value: int) -> datetime:
    return _UNIX_EPOCH + timedelta(microseconds=value)


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _membership_key(user_id: str, organization_id: str):
    return (_memberships.c.user_id == user_id) & (_memberships.c.organization_id == organization_id)


def _keeps_an_owner(organization_id: str):
    """Row condition: the row is not an owner, or the organization has another owner."""
    owners = _memberships.alias("owners")
    owner_count = (
        select(func.count())
        .select_from(owners)
        .where((owners.c.organization_id == organization_id) & (owners.c.role == Role.owner.value))
        .scalar_subquery()
    )
    return (_memberships.c.role != Role.owner.value) | (owner_count > 1)


def _lock_owners(conn, organization_id: str) -> None:
    """Row-lock an organization's owners for the rest of the transaction.

    SQLite needs no lock here: a writing statement holds the database write
    lock from its first read. Other backends evaluate the owner-count
    subquery against a statement snapshot, so concurrent demotions must
    queue on the owner rows first.
    """
    if conn.dialect.name == "sqlite":
        return
    conn.execute(
        select(_memberships.c.id)
        .where((_memberships.c.organization_id == organization_id) & (_memberships.c.role == Role.owner.value))
        .with_for_update()
    ).fetchall()


def _raise_if_member(conn, user_id: str, organization_id: str) -> None:
    """After a guarded write matched nothing, a surviving row means the owner guard refused it."""
    row = conn.execute(select(_memberships.c.id).where(_membership_key(user_id, organization_id))).first()
    if row is not None:
        raise LastOwner()


def _storage_call(method):
    """Retry a store method on transient errors, then raise TransientStorageError.

    Only OperationalError (lock timeouts, dropped connections, statement
    timeouts) and pool checkout timeouts are retried. IntegrityError and
    programming errors propagate untouched.
    """

    @functools.wraps(method)
    def wrapper(self: AuthStore, *args, **kwargs):
        attempt = 0
        while True:
            attempt += 1
            try:
                return method(self, *args, **kwargs)
            except (OperationalError, PoolTimeoutError) as exc:
                if attempt > self.retry_attempts:
                    logger.error("%s failed after %d attempt(s): %s", method.__name__, attempt, exc)
                    raise TransientStorageError() from exc
                logger.warning("%s hit a transient storage error, retrying: %s", method.__name__, exc)

    return wrapper


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, sessions, organizations and memberships.

    Usage:
        store = AuthStore("sqlite:///authcore.db")
        store = AuthStore.from_settings(settings)
        user = store.create_user(UserIdentity(email="ann@x.com"), record)
        store.close()
    """

    def __init__(self, db_url: str, timeout_seconds: float = 5.0, retry_attempts: int = 1) -> None:
        self.retry_attempts = retry_attempts
        connect_args, engine_kwargs = _engine_options(db_url, timeout_seconds)
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    @classmethod
    def from_settings(cls, settings: Settings) -> AuthStore:
        return cls(
            settings.database_url,
            timeout_seconds=settings.storage_timeout_seconds,
            retry_attempts=settings.storage_retry_attempts,
        )

    @_storage_call
    def ping(self) -> bool:
        """Round-trip a trivial query. Used by the health endpoint."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @_storage_call
    def create_user(self, user: UserIdentity, password: PasswordRecord) -> UserIdentity:
        """Insert a user with its password record in one statement.

        Raises EmailTaken if the email already exists. The caller is expected
        to pass a lowercased email; this method does not normalize.
        """
        now = _now()
        user_id = user.id or _new_id()
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        email=user.email,
                        name=user.name,
                        email_verified=1 if user.email_verified else 0,
                        banned=1 if user.banned else 0,
                        password_algorithm=password.algorithm,
                        password_params=password.params,
                        password_salt=password.salt,
                        password_digest=password.digest,
                        created_at=now.isoformat(),
                        updated_at=now.isoformat(),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise EmailTaken() from exc
        return UserIdentity(
            id=user_id,
            email=user.email,
            name=user.name,
            email_verified=user.email_verified,
            banned=user.banned,
            created_at=now,
            updated_at=now,
        )

    @_storage_call
    def find_user_by_email(self, email: str) -> UserIdentity | None:
        """Look up a user by exact (already lowercased) email."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    @_storage_call
    def find_user_by_id(self, user_id: str) -> UserIdentity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    @_storage_call
    def find_credentials(self, email: str) -> tuple[UserIdentity, PasswordRecord] | None:
        """Return a user and its hash record in one query. Only CredentialStore calls this.

        One round trip for both keeps the "user exists" path the same shape
        as the "no such user" path, which matters for timing equalization.
        """
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        if row is None:
            return None
        return _row_to_user(row), _row_to_password(row)

    @_storage_call
    def find_password_record(self, user_id: str) -> PasswordRecord | None:
        """Return the stored hash record. Only CredentialStore calls this."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(
                    _users.c.password_algorithm,
                    _users.c.password_params,
                    _users.c.password_salt,
                    _users.c.password_digest,
                ).where(_users.c.id == user_id)
            ).fetchone()
        return _row_to_password(row) if row is not None else None

    @_storage_call
    def update_password_record(self, user_id: str, password: PasswordRecord) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    password_algorithm=password.algorithm,
                    password_params=password.params,
                    password_salt=password.salt,
                    password_digest=password.digest,
                    updated_at=_now().isoformat(),
                )
            )
            conn.commit()
        return result.rowcount > 0

    @_storage_call
    def set_email_verified(self, user_id: str, verified: bool = True) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(email_verified=1 if verified else 0, updated_at=_now().isoformat())
            )
            conn.commit()
        return result.rowcount > 0

    @_storage_call
    def set_banned(self, user_id: str, banned: bool = True) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(banned=1 if banned else 0, updated_at=_now().isoformat())
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @_storage_call
    def create_session(self, session: Session, token_hash: str) -> Session:
        session_id = session.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session_id,
                    token_hash=token_hash,
                    user_id=session.user_id,
                    active_organization_id=session.active_organization_id,
                    created_at=_to_epoch(session.created_at),
                    expires_at=_to_epoch(session.expires_at),
                    last_seen_at=_to_epoch(session.last_seen_at),
                    revoked=0,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                )
            )
            conn.commit()
        session.id = session_id
        return session

    @_storage_call
    def find_session_by_token_hash(self, token_hash: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    @_storage_call
    def extend_session(self, token_hash: str, expires_at: datetime, last_seen_at: datetime) -> bool:
        """Move a live session's expiry forward. Never moves it backward.

        The WHERE clause is the whole concurrency story: of two racing
        refreshes, the one computing the later expiry wins regardless of
        commit order, and a revoked session is never resurrected.
        """
        new_expiry = _to_epoch(expires_at)
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.token_hash == token_hash)
                    & (_sessions.c.revoked == 0)
                    & (_sessions.c.expires_at < new_expiry)
                )
                .values(expires_at=new_expiry, last_seen_at=_to_epoch(last_seen_at))
            )
            conn.commit()
        return result.rowcount > 0

    @_storage_call
    def revoke_session(self, token_hash: str) -> bool:
        """Mark a session revoked. Returns False if it was missing or already revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.token_hash == token_hash) & (_sessions.c.revoked == 0))
                .values(revoked=1)
            )
            conn.commit()
        return result.rowcount > 0

    @_storage_call
    def set_active_organization(self, token_hash: str, organization_id: str | None) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.token_hash == token_hash) & (_sessions.c.revoked == 0))
                .values(active_organization_id=organization_id)
            )
            conn.commit()
        return result.rowcount > 0

    @_storage_call
    def list_sessions_for_user(self, user_id: str, now: datetime) -> list[Session]:
        """Return the user's live sessions, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.revoked == 0)
                    & (_sessions.c.expires_at >= _to_epoch(now))
                )
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    @_storage_call
    def revoke_sessions_for_user(self, user_id: str, except_token_hash: str | None = None) -> int:
        """Revoke every live session of a user, optionally sparing one. Returns the count."""
        condition = (_sessions.c.user_id == user_id) & (_sessions.c.revoked == 0)
        if except_token_hash is not None:
            condition = condition & (_sessions.c.token_hash != except_token_hash)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(condition).values(revoked=1))
            conn.commit()
        return result.rowcount

    @_storage_call
    def clear_active_organization(self, user_id: str, organization_id: str) -> int:
        """Drop organization context from a user's sessions after their membership ends."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.active_organization_id == organization_id))
                .values(active_organization_id=None)
            )
            conn.commit()
        return result.rowcount

    @_storage_call
    def purge_sessions(self, now: datetime) -> int:
        """Delete rows whose expiry has passed. Storage hygiene only.

        Revoked-but-unexpired rows are kept so a revoked token keeps
        resolving to "revoked" until its natural expiry.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < _to_epoch(now)))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Organizations and memberships
    # ------------------------------------------------------------------

    @_storage_call
    def create_organization(self, organization: Organization, owner_id: str) -> Organization:
        """Insert an organization and its first owner membership atomically.

        Raises SlugTaken if the slug already exists.
        """
        now = _now()
        org_id = organization.id or _new_id()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _organizations.insert().values(
                        id=org_id,
                        name=organization.name,
                        slug=organization.slug,
                        created_at=now.isoformat(),
                    )
                )
                conn.execute(
                    _memberships.insert().values(
                        user_id=owner_id,
                        organization_id=org_id,
                        role=Role.owner.value,
                        joined_at=now.isoformat(),
                    )
                )
        except IntegrityError as exc:
            raise SlugTaken() from exc
        return Organization(id=org_id, name=organization.name, slug=organization.slug, created_at=now)

    @_storage_call
    def find_organization(self, organization_id: str) -> Organization | None:
        with self.engine.connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == organization_id)).fetchone()
        if row is None:
            return None
        return Organization(id=row.id, name=row.name, slug=row.slug, created_at=_from_iso(row.created_at))

    @_storage_call
    def add_membership(self, membership: OrganizationMembership) -> OrganizationMembership:
        """Insert a membership row. Raises AlreadyMember on a duplicate pair."""
        now = _now()
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _memberships.insert().values(
                        user_id=membership.user_id,
                        organization_id=membership.organization_id,
                        role=Role(membership.role).value,
                        joined_at=now.isoformat(),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise AlreadyMember() from exc
        return OrganizationMembership(
            user_id=membership.user_id,
            organization_id=membership.organization_id,
            role=Role(membership.role),
            joined_at=now,
        )

    @_storage_call
    def update_membership_role(self, user_id: str, organization_id: str, role: Role) -> bool:
        """Change a member's role. Returns False if there is no such membership.

        Taking the owner role away is conditional on another owner existing
        when the row is written; LastOwner is raised when it does not.
        """
        role = Role(role)
        condition = _membership_key(user_id, organization_id)
        if role is not Role.owner:
            condition = condition & _keeps_an_owner(organization_id)
        with self.engine.begin() as conn:
            _lock_owners(conn, organization_id)
            result = conn.execute(_memberships.update().where(condition).values(role=role.value))
            if result.rowcount == 0:
                _raise_if_member(conn, user_id, organization_id)
        return result.rowcount > 0

    @_storage_call
    def remove_membership(self, user_id: str, organization_id: str) -> bool:
        """Delete a membership. Returns False if there is no such membership.

        Raises LastOwner instead of deleting an organization's only owner.
        """
        with self.engine.begin() as conn:
            _lock_owners(conn, organization_id)
            result = conn.execute(
                _memberships.delete().where(
                    _membership_key(user_id, organization_id) & _keeps_an_owner(organization_id)
                )
            )
            if result.rowcount == 0:
                _raise_if_member(conn, user_id, organization_id)
        return result.rowcount > 0

    @_storage_call
    def count_owners(self, organization_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_memberships)
                .where((_memberships.c.organization_id == organization_id) & (_memberships.c.role == Role.owner.value))
            ).scalar()
        return result or 0

    @_storage_call
    def list_memberships(self, user_id: str) -> list[OrganizationMembership]:
        """Return all memberships of a user, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _memberships.select().where(_memberships.c.user_id == user_id).order_by(_memberships.c.joined_at)
            ).fetchall()
        return [_row_to_membership(r) for r in rows]

    @_storage_call
    def find_membership(self, user_id: str, organization_id: str) -> OrganizationMembership | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _memberships.select().where(
                    (_memberships.c.user_id == user_id) & (_memberships.c.organization_id == organization_id)
                )
            ).fetchone()
        return _row_to_membership(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> UserIdentity:
    return UserIdentity(
        id=row.id,
        email=row.email,
        name=row.name,
        email_verified=bool(row.email_verified),
        banned=bool(row.banned),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_password(row) -> PasswordRecord:
    return PasswordRecord(
        algorithm=row.password_algorithm,
        params=row.password_params,
        salt=row.password_salt,
        digest=row.password_digest,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        active_organization_id=row.active_organization_id,
        created_at=_from_epoch(row.created_at),
        expires_at=_from_epoch(row.expires_at),
        last_seen_at=_from_epoch(row.last_seen_at),
        revoked=bool(row.revoked),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
    )


def _row_to_membership(row) -> OrganizationMembership:
    try:
        role = Role(row.role)
    except ValueError as exc:
        # The column is only ever written from the Role enum.
        logger.error("membership %s has unknown role %r", row.id, row.role)
        raise InternalError() from exc
    return OrganizationMembership(
        user_id=row.user_id,
        organization_id=row.organization_id,
        role=role,
        joined_at=_from_iso(row.joined_at),
    )
