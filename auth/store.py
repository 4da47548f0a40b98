"""
auth/store.py -- SQLAlchemy Core persistence layer for users, roles and sessions.

Pattern: Repository + Data Mapper. AuthStore is the repository;
_row_to_user / _row_to_session are the mappers. The session service, the
orchestrator and the CLI never touch SQL directly.

Every public method is one short transaction. No method holds a connection
past its return, so nothing spans a request boundary.

Failure policy: any SQLAlchemyError escaping a public method, and any row
the mappers cannot decode (ValueError), is re-raised as
auth.errors.StorageFailure. Callers decide whether that degrades (read paths)
or fails the request (write paths); the store never decides.

Timestamps are stored as ISO 8601 UTC strings with microsecond precision so
lexicographic order equals chronological order.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StorageFailure
from auth.models import DEFAULT_ROLE, Role, Session, User

logger = logging.getLogger("sessiongate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("username", String(255)),
    Column("avatar_url", Text),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role", String(20), nullable=False),
    UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("token", String(128), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),  # NULL = live
    Column("user_agent", Text),  # audit only
    Column("ip", String(64)),  # audit only
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so session reads never block on a login write.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


def _storage_errors(method):
    """Re-raise SQLAlchemyError, or a row the mappers cannot decode, as StorageFailure."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except (SQLAlchemyError, ValueError) as exc:
            raise StorageFailure(f"{method.__name__} failed: {exc.__class__.__name__}") from exc

    return wrapper


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for User, role and Session records.

    Usage:
        store = AuthStore("sqlite:///sessiongate.db")
        user = store.upsert_by_email("jane@example.com", "Jane", None)
        store.create_session(Session(token=..., user_id=user.id, expires_at=...))
        found = store.find_by_token(token)   # (Session, User) or None
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @_storage_errors
    def upsert_by_email(
        self,
        email: str,
        username: str | None,
        avatar_url: str | None,
        default_role: Role = DEFAULT_ROLE,
    ) -> User:
        """Create or update the user keyed by email and return the fresh record.

        On match, username and avatar_url are overwritten with the given
        values. On miss, a new user is created holding only default_role.
        last_login is stamped either way.

        Two concurrent first logins for the same email race on the UNIQUE
        email constraint. The loser gets IntegrityError on insert and retries
        once, which then takes the update branch.
        """
        try:
            return self._upsert_once(email, username, avatar_url, default_role)
        except IntegrityError:
            logger.info("Concurrent first login for %s, retrying as update", email)
            return self._upsert_once(email, username, avatar_url, default_role)

    def _upsert_once(self, email: str, username: str | None, avatar_url: str | None, default_role: Role) -> User:
        now = _now_iso()
        with self.engine.begin() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email)).fetchone()
            if row is not None:
                user_id = row.id
                conn.execute(
                    _users.update()
                    .where(_users.c.id == user_id)
                    .values(username=username, avatar_url=avatar_url, last_login=now)
                )
            else:
                result = conn.execute(
                    _users.insert().values(
                        email=email,
                        username=username,
                        avatar_url=avatar_url,
                        created_at=now,
                        last_login=now,
                    )
                )
                user_id = result.inserted_primary_key[0]
                conn.execute(_user_roles.insert().values(user_id=user_id, role=default_role.value))
            return self._load_user(conn, user_id)

    @_storage_errors
    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            return self._load_user(conn, user_id)

    @_storage_errors
    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.id).where(_users.c.email == email)).fetchone()
            return self._load_user(conn, row.id) if row is not None else None

    @_storage_errors
    def grant_role(self, user_id: int, role: Role) -> bool:
        """Add a role to a user. Returns False if the user already holds it."""
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(_user_roles.c.id).where((_user_roles.c.user_id == user_id) & (_user_roles.c.role == role.value))
            ).fetchone()
            if exists is not None:
                return False
            conn.execute(_user_roles.insert().values(user_id=user_id, role=role.value))
        return True

    @_storage_errors
    def revoke_role(self, user_id: int, role: Role) -> bool:
        """Remove a role from a user. Returns False if the user did not hold it."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role == role.value))
            )
        return result.rowcount > 0

    def _load_user(self, conn: Connection, user_id: int) -> User | None:
        row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        if row is None:
            return None
        return _row_to_user(row, self._roles_for(conn, user_id))

    @staticmethod
    def _roles_for(conn: Connection, user_id: int) -> frozenset[Role]:
        rows = conn.execute(select(_user_roles.c.role).where(_user_roles.c.user_id == user_id)).fetchall()
        roles = set()
        for (value,) in rows:
            try:
                roles.add(Role(value))
            except ValueError:
                # A role name this build does not know grants nothing.
                logger.warning("Ignoring unknown role %r on user %s", value, user_id)
        return frozenset(roles)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @_storage_errors
    def create_session(self, session: Session) -> None:
        """Insert a session row.

        A duplicate token violates the primary key and surfaces as
        StorageFailure. With 256-bit tokens this never happens in practice,
        and the caller must not retry with the same token.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    token=session.token,
                    user_id=session.user_id,
                    expires_at=_to_iso(session.expires_at),
                    revoked_at=None,
                    user_agent=session.user_agent,
                    ip=session.ip,
                    created_at=_to_iso(session.created_at) if session.created_at else _now_iso(),
                )
            )

    @_storage_errors
    def find_by_token(self, token: str) -> tuple[Session, User] | None:
        """Return the session and its owner with roles, or None.

        No validity filtering happens here: revoked and expired rows are
        returned as-is and the session service decides.
        """
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token == token)).fetchone()
            if row is None:
                return None
            user = self._load_user(conn, row.user_id)
        if user is None:
            return None
        return _row_to_session(row), user

    @_storage_errors
    def revoke_session(self, token: str, revoked_at: datetime) -> bool:
        """Stamp revoked_at on a live session. Returns True if a row changed.

        The revoked_at IS NULL guard keeps revocation monotonic: the first
        revocation time is never overwritten.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.token == token) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=_to_iso(revoked_at))
            )
        return result.rowcount > 0

    @_storage_errors
    def revoke_user_sessions(self, user_id: int, revoked_at: datetime) -> int:
        """Revoke every unexpired, unrevoked session of a user. Returns the count."""
        stamp = _to_iso(revoked_at)
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.revoked_at.is_(None))
                    & (_sessions.c.expires_at > stamp)
                )
                .values(revoked_at=stamp)
            )
        return result.rowcount

    @_storage_errors
    def list_sessions(self, user_id: int) -> list[Session]:
        """Return all sessions of a user, newest first. Operator use only."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    @_storage_errors
    def purge_sessions_expired_before(self, cutoff: datetime) -> int:
        """Delete sessions whose expiry is earlier than cutoff. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < _to_iso(cutoff)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: frozenset[Role]) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        avatar_url=row.avatar_url,
        roles=roles,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_session(row) -> Session:
    return Session(
        token=row.token,
        user_id=row.user_id,
        expires_at=_from_iso(row.expires_at),
        revoked_at=_from_iso(row.revoked_at),
        user_agent=row.user_agent,
        ip=row.ip,
        created_at=_from_iso(row.created_at),
    )
