"""
auth/store.py -- SQLAlchemy Core persistence layer for user records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. The verifier, the service facade, the routes and the CLI never
touch SQL directly.

Schema:
  users       -- one row per identity. username and email carry UNIQUE
                 constraints; email is stored lower-cased so uniqueness is
                 case-insensitive.
  user_roles  -- (user_id, role) composite primary key, so the database
                 itself refuses a duplicate role grant.

Timestamps are stamped explicitly from the injected clock on every write
(created_at on insert, updated_at on every mutation). Nothing is populated
implicitly.

Failure model:
  IntegrityError propagates unchanged -- it is the caller's signal that a
  username or email is taken.
  Every other SQLAlchemyError (lost connection, locked database, missing
  table) is raised as StoreUnavailable so callers never mistake an outage
  for "user not found".

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/. core/ is allowed (clock).
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import UserRecord, normalize_roles
from core.clock import Clock, SystemClock

logger = logging.getLogger("authservice.auth.store")

_DEFAULT_DB_URL = "sqlite:///authservice.db"


class StoreUnavailable(Exception):
    """A backing store could not answer. Transient; callers may retry."""


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("enabled", Integer, nullable=False, server_default="1"),
    Column("account_non_expired", Integer, nullable=False, server_default="1"),
    Column("account_non_locked", Integer, nullable=False, server_default="1"),
    Column("credentials_non_expired", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    # Opaque reference owned by whichever service provisions user storage.
    Column("bucket_id", String(64)),
)

_user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False),
    Column("role", String(64), nullable=False),
    PrimaryKeyConstraint("user_id", "role"),
)

# Columns set_status() may touch. Validated before any SQL is built.
STATUS_FLAGS = frozenset({"enabled", "account_non_expired", "account_non_locked", "credentials_non_expired"})


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an Engine with the SQLite settings every store in this project uses."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def to_iso(value: datetime | None) -> str | None:
    # Fixed-width UTC strings so they also sort correctly as text.
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for UserRecord entities.

    Usage:
        store = UserStore("sqlite:///:memory:")
        user_id = store.create_user(UserRecord(username="alice", email="a@example.com",
                                               hashed_password=hash_password("secret123"),
                                               roles={"user"}))
        user = store.find_by_identifier("alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self.engine: Engine = make_engine(db_url)
        with self._connection() as conn:
            metadata.create_all(conn)
            conn.commit()

    @contextmanager
    def _connection(self, begin: bool = False) -> Iterator[Connection]:
        """Yield a connection; translate infrastructure errors to StoreUnavailable."""
        try:
            if begin:
                with self.engine.begin() as conn:
                    yield conn
            else:
                with self.engine.connect() as conn:
                    yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("User store error: %s", exc.__class__.__name__)
            raise StoreUnavailable("user store unavailable") from exc

    def _now_iso(self) -> str:
        return to_iso(self.clock.now())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: UserRecord) -> str:
        """Insert a new user with its roles and return the assigned id.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. The user row and its role rows are written in one transaction.
        """
        user_id = user.id or uuid.uuid4().hex
        now = self._now_iso()
        with self._connection(begin=True) as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    username=user.username,
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    enabled=int(user.enabled),
                    account_non_expired=int(user.account_non_expired),
                    account_non_locked=int(user.account_non_locked),
                    credentials_non_expired=int(user.credentials_non_expired),
                    created_at=now,
                    updated_at=now,
                    last_login_at=to_iso(user.last_login_at),
                    bucket_id=user.bucket_id,
                )
            )
            if user.roles:
                conn.execute(
                    _user_roles.insert(),
                    [{"user_id": user_id, "role": role} for role in sorted(user.roles)],
                )
        logger.info("User created (id=%s, username=%s)", user_id, user.username)
        return user_id

    def touch_last_login(self, user_id: str, timestamp: datetime) -> None:
        """Stamp last_login_at for the given user after a successful login."""
        with self._connection() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=to_iso(timestamp)))
            conn.commit()

    def add_role(self, user_id: str, role: str) -> bool:
        """Grant a role. Returns False if the user does not exist or already has it."""
        (role,) = normalize_roles([role])
        with self._connection(begin=True) as conn:
            if not self._exists(conn, user_id):
                return False
            existing = conn.execute(
                select(_user_roles.c.role).where((_user_roles.c.user_id == user_id) & (_user_roles.c.role == role))
            ).fetchone()
            if existing is not None:
                return False
            conn.execute(_user_roles.insert().values(user_id=user_id, role=role))
            conn.execute(_users.update().where(_users.c.id == user_id).values(updated_at=self._now_iso()))
        return True

    def remove_role(self, user_id: str, role: str) -> bool:
        """Revoke a role. Returns False if the user did not hold it."""
        with self._connection(begin=True) as conn:
            result = conn.execute(
                _user_roles.delete().where((_user_roles.c.user_id == user_id) & (_user_roles.c.role == role))
            )
            if result.rowcount == 0:
                return False
            conn.execute(_users.update().where(_users.c.id == user_id).values(updated_at=self._now_iso()))
        return True

    def set_status(self, user_id: str, **flags: bool) -> bool:
        """Update account status flags.

        Only keys in STATUS_FLAGS are accepted. Unknown keys raise ValueError
        rather than being silently ignored. Returns False if user_id was not
        found.
        """
        unknown = set(flags) - STATUS_FLAGS
        if unknown:
            raise ValueError(f"Unknown status flags: {sorted(unknown)!r}")
        if not flags:
            return self.get_by_id(user_id) is not None
        values = {name: int(bool(value)) for name, value in flags.items()}
        values["updated_at"] = self._now_iso()
        with self._connection() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def disable_user(self, user_id: str) -> bool:
        """Soft-delete: users are never removed, only disabled."""
        return self.set_status(user_id, enabled=False)

    def update_password(self, user_id: str, hashed_password: str) -> bool:
        """Replace the stored hash and clear the credentials-expired flag."""
        with self._connection() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    hashed_password=hashed_password,
                    credentials_non_expired=1,
                    updated_at=self._now_iso(),
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self._connection() as conn:
            count = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (count or 0) > 0

    def get_by_id(self, user_id: str) -> UserRecord | None:
        return self._get_one(_users.c.id == user_id)

    def get_by_username(self, username: str) -> UserRecord | None:
        """Look up a user by exact username (case-sensitive)."""
        return self._get_one(_users.c.username == username)

    def get_by_email(self, email: str) -> UserRecord | None:
        return self._get_one(_users.c.email == email.strip().lower())

    def find_by_identifier(self, identifier: str) -> UserRecord | None:
        """Look up a user by username or email. Returns None if neither matches."""
        return self._get_one(
            or_(_users.c.username == identifier, _users.c.email == identifier.strip().lower()),
        )

    def list_users(self) -> list[UserRecord]:
        """Return all users ordered by username."""
        with self._connection() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
            role_rows = conn.execute(select(_user_roles.c.user_id, _user_roles.c.role)).fetchall()
        roles: dict[str, set[str]] = {}
        for user_id, role in role_rows:
            roles.setdefault(user_id, set()).add(role)
        return [_row_to_user(row, roles.get(row.id, set())) for row in rows]

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_one(self, clause) -> UserRecord | None:
        with self._connection() as conn:
            row = conn.execute(_users.select().where(clause)).fetchone()
            if row is None:
                return None
            roles = conn.execute(select(_user_roles.c.role).where(_user_roles.c.user_id == row.id)).scalars().all()
        return _row_to_user(row, roles)

    @staticmethod
    def _exists(conn: Connection, user_id: str) -> bool:
        return conn.execute(select(_users.c.id).where(_users.c.id == user_id)).fetchone() is not None


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles) -> UserRecord:
    return UserRecord(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        roles=frozenset(roles),
        enabled=bool(row.enabled),
        account_non_expired=bool(row.account_non_expired),
        account_non_locked=bool(row.account_non_locked),
        credentials_non_expired=bool(row.credentials_non_expired),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        last_login_at=from_iso(row.last_login_at),
        bucket_id=row.bucket_id,
    )
