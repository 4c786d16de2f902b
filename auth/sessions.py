"""
auth/sessions.py -- Session store: opaque bearer tokens with expiry.

Lifecycle per session:
    active --(expires_at passes)--> expired      (terminal)
    active --(invalidate / bulk)--> invalidated  (terminal)

A session is valid iff its row exists, expires_at is in the future, and the
owning user is active. Expired or orphaned rows found during a lookup are
deleted on the spot; cleanup_expired() sweeps the rest.

Storage:
  The sessions table shares MetaData and engine with auth/store.py. Only
  HMAC(SECRET_KEY, token) is persisted (token_hash, UNIQUE). The raw token is
  handed back once from create() and is otherwise only ever in the caller's
  hands.

Concurrency:
  Every operation runs under the RLock owned by the UserStore, so a sweep can
  never interleave with a lookup and a lookup never observes a half-deleted
  record. The lock is shared with UserStore so a deactivation and a lookup on
  the same user are serialized too.

Errors:
  Expected failures raise AuthError with NOT_FOUND, EXPIRED, USER_DEACTIVATED,
  USER_NOT_FOUND or INVALID_INPUT. Callers in the guard collapse the lookup
  kinds into a single INVALID_TOKEN for clients.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, ForeignKey, Integer, String, Table, func, select

from auth.errors import AuthError, ErrorKind
from auth.models import Session, SessionStats
from auth.store import UserStore, metadata, now_iso, users
from auth.tokens import generate_token, hash_token

logger = logging.getLogger("church.sessions")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

sessions = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("last_accessed", String(32), nullable=False),
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    """Creates, resolves, refreshes and destroys sessions.

    Usage:
        users = UserStore("sqlite:///:memory:")
        store = SessionStore(users, default_ttl=3600)
        session = store.create(user_id)
        same = store.find_by_token(session.token)
        store.invalidate(session.token)

    clock is injectable so tests can move time without sleeping.
    """

    def __init__(
        self,
        user_store: UserStore,
        default_ttl: int = 24 * 60 * 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.user_store = user_store
        self.engine = user_store.engine
        self._lock = user_store.lock
        self.default_ttl = default_ttl
        self._clock = clock

    def _now(self) -> str:
        return now_iso(self._clock())

    def _expiry(self, ttl_seconds: int | None) -> str:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        return now_iso(self._clock() + timedelta(seconds=ttl))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, user_id: int | None, ttl_seconds: int | None = None) -> Session:
        """Open a new session for an existing, active user.

        ttl_seconds <= 0 produces a session that is already expired; that is
        allowed so expiry handling can be exercised end to end.
        """
        if user_id is None:
            raise AuthError(ErrorKind.INVALID_INPUT, "User ID is required.")
        with self._lock:
            user = self.user_store.get_by_id(user_id)
            if user is None or not user.is_active:
                raise AuthError(ErrorKind.USER_NOT_FOUND)

            token = generate_token()
            now = self._now()
            expires_at = self._expiry(ttl_seconds)
            with self.engine.connect() as conn:
                result = conn.execute(
                    sessions.insert().values(
                        user_id=user_id,
                        token_hash=hash_token(token),
                        expires_at=expires_at,
                        created_at=now,
                        last_accessed=now,
                    )
                )
                conn.commit()
                session_id = result.inserted_primary_key[0]
        logger.info("Session %s opened for user_id=%s", session_id, user_id)
        return Session(
            id=session_id,
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            created_at=now,
            last_accessed=now,
        )

    def find_by_token(self, token: str | None) -> Session:
        """Resolve a raw token to its live session.

        Raises AuthError NOT_FOUND (unknown/empty), EXPIRED, or
        USER_DEACTIVATED. On success last_accessed is bumped.
        """
        if not isinstance(token, str) or not token:
            raise AuthError(ErrorKind.NOT_FOUND)
        token_hash = hash_token(token)
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(_lookup_query(token_hash)).fetchone()
                if row is None:
                    raise AuthError(ErrorKind.NOT_FOUND)
                session = self._validate_row(conn, row)
                now = self._now()
                conn.execute(sessions.update().where(sessions.c.id == row.id).values(last_accessed=now))
                conn.commit()
        session.token = token
        session.last_accessed = now
        return session

    def refresh(self, token: str | None, ttl_seconds: int | None = None) -> Session:
        """Move a live session's expiry to now + ttl. Fails like find_by_token()."""
        if not isinstance(token, str) or not token:
            raise AuthError(ErrorKind.NOT_FOUND)
        token_hash = hash_token(token)
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(_lookup_query(token_hash)).fetchone()
                if row is None:
                    raise AuthError(ErrorKind.NOT_FOUND)
                session = self._validate_row(conn, row)
                now = self._now()
                expires_at = self._expiry(ttl_seconds)
                conn.execute(
                    sessions.update()
                    .where(sessions.c.id == row.id)
                    .values(expires_at=expires_at, last_accessed=now)
                )
                conn.commit()
        session.token = token
        session.expires_at = expires_at
        session.last_accessed = now
        return session

    def invalidate(self, token: str | None) -> bool:
        """Destroy one session. A second call for the same token raises NOT_FOUND."""
        if not isinstance(token, str) or not token:
            raise AuthError(ErrorKind.NOT_FOUND)
        with self._lock, self.engine.connect() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.token_hash == hash_token(token)))
            conn.commit()
        if result.rowcount == 0:
            raise AuthError(ErrorKind.NOT_FOUND)
        return True

    def invalidate_all_for_user(self, user_id: int | None) -> int:
        """Destroy every session belonging to user_id.

        Returns how many of them were still active. Expired rows that the sweep
        has not reached yet are deleted too but not counted.
        """
        if user_id is None:
            raise AuthError(ErrorKind.INVALID_INPUT, "User ID is required.")
        owned = sessions.c.user_id == user_id
        with self._lock, self.engine.connect() as conn:
            count = (
                conn.execute(
                    select(func.count()).select_from(sessions).where(owned & (sessions.c.expires_at > self._now()))
                ).scalar()
                or 0
            )
            conn.execute(sessions.delete().where(owned))
            conn.commit()
        if count:
            logger.info("Invalidated %d session(s) for user_id=%s", count, user_id)
        return count

    def cleanup_expired(self) -> int:
        """Delete every session whose expiry has passed. Returns the count removed."""
        with self._lock, self.engine.connect() as conn:
            result = conn.execute(sessions.delete().where(sessions.c.expires_at <= self._now()))
            conn.commit()
        count = result.rowcount or 0
        if count:
            logger.info("Swept %d expired session(s)", count)
        return count

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def is_valid(self, token: str | None) -> bool:
        try:
            self.find_by_token(token)
        except AuthError:
            return False
        return True

    def list_for_user(self, user_id: int) -> list[Session]:
        """Return the user's unexpired sessions, newest first. Tokens are not included."""
        with self._lock, self.engine.connect() as conn:
            rows = conn.execute(
                sessions.select()
                .where((sessions.c.user_id == user_id) & (sessions.c.expires_at > self._now()))
                .order_by(sessions.c.created_at.desc(), sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def statistics(self) -> SessionStats:
        """Point-in-time counts. total == active + expired."""
        now = self._now()
        with self._lock, self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(sessions)).scalar() or 0
            active = (
                conn.execute(
                    select(func.count()).select_from(sessions).where(sessions.c.expires_at > now)
                ).scalar()
                or 0
            )
        return SessionStats(total=total, active=active, expired=total - active)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_row(self, conn, row) -> Session:
        """Apply the expiry and active-owner rules to a fetched row.

        Must be called with the lock held and inside the caller's connection.
        row comes from _lookup_query(), so owner_active is NULL when the owning
        user row is gone. Deletes the row and raises when it is no longer valid.
        """
        if row.expires_at <= self._now():
            conn.execute(sessions.delete().where(sessions.c.id == row.id))
            conn.commit()
            raise AuthError(ErrorKind.EXPIRED)
        if not row.owner_active:
            conn.execute(sessions.delete().where(sessions.c.id == row.id))
            conn.commit()
            raise AuthError(ErrorKind.USER_DEACTIVATED)
        return _row_to_session(row)


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        expires_at=row.expires_at,
        created_at=row.created_at,
        last_accessed=row.last_accessed,
    )


def _lookup_query(token_hash: str):
    """Session row plus its owner's active flag, in one round trip."""
    return (
        select(sessions, users.c.is_active.label("owner_active"))
        .select_from(sessions.outerjoin(users, sessions.c.user_id == users.c.id))
        .where(sessions.c.token_hash == token_hash)
    )
