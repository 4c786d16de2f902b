"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route and guard code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  UserStore owns the engine and a process-wide RLock. SessionStore borrows
  both (see auth/sessions.py) so that every read-modify-write against either
  table is serialized. In-memory SQLite URLs use StaticPool so all threads see
  the same database; file-backed SQLite gets WAL mode.

Schema note:
  The sessions table lives in the same MetaData (defined in auth/sessions.py)
  so create_all() here builds both. Its foreign key to users(id) is declared
  but SQLite only enforces it with PRAGMA foreign_keys=ON, which we set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from auth.models import Role, User
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(10), nullable=False, server_default="Member"),
    Column("member_id", Integer, index=True),  # link into the membership subsystem
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("password_reset_required", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety (file DBs only)."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _enable_foreign_keys(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _is_memory_url(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso(moment: datetime | None = None) -> str:
    """UTC ISO 8601 with fixed microsecond precision.

    Fixed width keeps lexicographic order equal to time order, which the
    session expiry comparisons rely on.
    """
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User accounts.

    Usage:
        store = UserStore("sqlite:///:memory:")
        uid = store.create_user(User(username="admin", email="a@example.org",
                                     role=Role.ADMIN, hashed_password=hash_password("Secret123")))
        user = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        kwargs: dict = {}
        if db_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_url(db_url):
                kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, **kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_foreign_keys)
            if not _is_memory_url(db_url):
                event.listen(self.engine, "connect", _set_wal_mode)
        self.lock = threading.RLock()

        # Registers the sessions table on the shared MetaData before create_all.
        import auth.sessions  # noqa: F401

        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists."""
        with self.lock, self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers translate that into a 409.
        """
        with self.lock, self.engine.connect() as conn:
            result = conn.execute(
                users.insert().values(
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    role=Role.from_label(user.role).label,
                    member_id=user.member_id,
                    is_active=1 if user.is_active else 0,
                    password_reset_required=1 if user.password_reset_required else 0,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.lock, self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive)."""
        with self.lock, self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_member_id(self, member_id: int) -> User | None:
        """Return the account linked to a member profile, if any."""
        with self.lock, self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.member_id == member_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with self.lock, self.engine.connect() as conn:
            rows = conn.execute(users.select().order_by(users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_active_admins(self) -> int:
        with self.lock, self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(users)
                .where((users.c.role == Role.ADMIN.label) & (users.c.is_active == 1))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: role, is_active, member_id, email,
        password_reset_required. Booleans are stored as 0/1.

        Returns True if a row was updated, False if user_id was not found.
        """
        if "role" in fields:
            fields["role"] = Role.from_label(fields["role"]).label
        for flag in ("is_active", "password_reset_required"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if fields.get("is_active") == 1:
            fields["failed_login_attempts"] = 0
        with self.lock, self.engine.connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def deactivate(self, user_id: int) -> bool:
        return self.update_user(user_id, is_active=False)

    def activate(self, user_id: int) -> bool:
        """Reactivate an account and reset its failed-login counter."""
        return self.update_user(user_id, is_active=True)

    def update_password(self, user_id: int, hashed_password: str) -> bool:
        """Store a new password hash and clear password_reset_required."""
        with self.lock, self.engine.connect() as conn:
            result = conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(hashed_password=hashed_password, password_reset_required=0)
            )
            conn.commit()
        return result.rowcount > 0

    def record_failed_login(self, user_id: int, lockout_threshold: int = 0) -> int:
        """Increment the failed-login counter and return the new value.

        When lockout_threshold > 0 and the counter reaches it, the account is
        deactivated in the same critical section.
        """
        with self.lock, self.engine.connect() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(failed_login_attempts=users.c.failed_login_attempts + 1)
            )
            attempts = conn.execute(
                select(users.c.failed_login_attempts).where(users.c.id == user_id)
            ).scalar() or 0
            if lockout_threshold and attempts >= lockout_threshold:
                conn.execute(users.update().where(users.c.id == user_id).values(is_active=0))
            conn.commit()
        return attempts

    def record_successful_login(self, user_id: int) -> None:
        """Reset the failed-login counter and stamp last_login."""
        with self.lock, self.engine.connect() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(failed_login_attempts=0, last_login=now_iso())
            )
            conn.commit()

    def ping(self) -> None:
        """Round-trip a trivial query. Raises if the database is unreachable."""
        with self.lock, self.engine.connect() as conn:
            conn.execute(select(1))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=Role.from_label(row.role),
        member_id=row.member_id,
        is_active=bool(row.is_active),
        failed_login_attempts=row.failed_login_attempts or 0,
        last_login=row.last_login,
        password_reset_required=bool(row.password_reset_required),
        created_at=row.created_at,
    )
