"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user,
_row_to_session and _row_to_verification are the mappers. Services never touch
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  One verification row per user (PRIMARY KEY user_id). upsert_verification()
  is a single INSERT .. ON CONFLICT DO UPDATE, and
  replace_verification_if_issued_before() is a single conditional UPDATE, so
  two concurrent resends cannot both overwrite the code.

  Timestamps are UTC ISO 8601 strings with fixed microsecond precision
  (to_iso()), which makes lexicographic order in SQL equal chronological order.

  sqlite busy timeout is bounded by storage_timeout; a locked database
  surfaces as sqlalchemy OperationalError, which the services report as
  StorageError.

DB path: auth/sessiongate.db unless a database_url is given.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from auth.models import Session, User, VerificationRequest

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'sessiongate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("email", String(320), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("email_verified_at", String(32)),  # NULL = unverified
    Column("created_at", String(32), nullable=False),
    Column("last_password_change", String(32)),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("access_token", String(64), nullable=False),
    Column("refresh_token", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("refresh_expires_at", String(32), nullable=False),
    Column("last_active", String(32), nullable=False),
    Column("revoked_at", String(32)),  # NULL = live
)

_verifications = Table(
    "verifications",
    _metadata,
    Column("user_id", String(36), primary_key=True),
    Column("code", Integer, nullable=False),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode / busy timeout
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(value: datetime) -> str:
    """Format a datetime as a fixed-width UTC ISO 8601 string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Session and VerificationRequest entities.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(name="A", email="a@x.com", hashed_password=hash_password("Secret123")))
        user = store.get_by_email("a@x.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, storage_timeout: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = storage_timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        with self.engine.connect() as conn:
            conn.execute(select(1)).scalar()
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its generated id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        user_id = user.id or str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(_users.insert().values(**_user_values(user, user_id)))
        return user_id

    def create_user_with_verification(self, user: User, verification: VerificationRequest) -> str:
        """Insert a user and its first verification code in one transaction.

        Either both rows exist afterwards or neither does. The verification's
        user_id is overwritten with the generated user id.
        """
        user_id = user.id or str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(_users.insert().values(**_user_values(user, user_id)))
            conn.execute(
                _verifications.insert().values(
                    user_id=user_id,
                    code=verification.code,
                    issued_at=verification.issued_at,
                    expires_at=verification.expires_at,
                )
            )
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(func.lower(_users.c.email) == email.lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def mark_email_verified(self, user_id: str, verified_at: datetime) -> bool:
        """Stamp email_verified_at and consume the verification code atomically.

        Only an unverified user is updated, so a second concurrent verify of
        the same code finds rowcount 0 and reports failure.
        Returns True if the user was updated.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.email_verified_at.is_(None)))
                .values(email_verified_at=to_iso(verified_at))
            )
            if result.rowcount == 0:
                return False
            conn.execute(_verifications.delete().where(_verifications.c.user_id == user_id))
        return True

    # ------------------------------------------------------------------
    # Session queries
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> str:
        """Insert a session row and return its generated id."""
        session_id = session.id or str(uuid.uuid4())
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session_id,
                    user_id=session.user_id,
                    access_token=session.access_token,
                    refresh_token=session.refresh_token,
                    created_at=session.created_at or now,
                    expires_at=session.expires_at,
                    refresh_expires_at=session.refresh_expires_at,
                    last_active=session.last_active or now,
                    revoked_at=None,
                )
            )
        return session_id

    def get_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, user_id: str, include_revoked: bool = False) -> list[Session]:
        """Return a user's sessions, newest first."""
        query = _sessions.select().where(_sessions.c.user_id == user_id)
        if not include_revoked:
            query = query.where(_sessions.c.revoked_at.is_(None))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_sessions.c.created_at.desc())).fetchall()
        return [_row_to_session(r) for r in rows]

    def rotate_access_token(
        self,
        session_id: str,
        old_access_token: str,
        new_access_token: str,
        expires_at: datetime,
    ) -> bool:
        """Swap in a new access token and expiry if the row is live and unchanged.

        The WHERE clause includes the old access token, so two concurrent
        refreshes of the same cookie cannot both succeed.
        Returns True if the row was updated.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.id == session_id)
                    & (_sessions.c.access_token == old_access_token)
                    & (_sessions.c.revoked_at.is_(None))
                )
                .values(access_token=new_access_token, expires_at=to_iso(expires_at), last_active=_now_iso())
            )
        return result.rowcount > 0

    def revoke_session(self, session_id: str, user_id: str | None = None) -> bool:
        """Mark a session revoked. When user_id is given, ownership must match.

        Returns True if a live session was revoked, False if not found, already
        revoked, or owned by someone else.
        """
        condition = (_sessions.c.id == session_id) & (_sessions.c.revoked_at.is_(None))
        if user_id is not None:
            condition = condition & (_sessions.c.user_id == user_id)
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.update().where(condition).values(revoked_at=_now_iso()))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Verification queries
    # ------------------------------------------------------------------

    def get_verification(self, user_id: str) -> VerificationRequest | None:
        with self.engine.connect() as conn:
            row = conn.execute(_verifications.select().where(_verifications.c.user_id == user_id)).fetchone()
        return _row_to_verification(row) if row is not None else None

    def upsert_verification(self, verification: VerificationRequest) -> None:
        """Insert the user's code, or overwrite the existing one, in one statement."""
        insert = pg_insert if self.engine.dialect.name == "postgresql" else sqlite_insert
        stmt = insert(_verifications).values(
            user_id=verification.user_id,
            code=verification.code,
            issued_at=verification.issued_at,
            expires_at=verification.expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[_verifications.c.user_id],
            set_={
                "code": stmt.excluded.code,
                "issued_at": stmt.excluded.issued_at,
                "expires_at": stmt.excluded.expires_at,
            },
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def replace_verification_if_issued_before(self, verification: VerificationRequest, cutoff: datetime) -> bool:
        """Overwrite the user's code only if the current one was issued at or before cutoff.

        Returns False when no row exists or the current code is too recent.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _verifications.update()
                .where(
                    (_verifications.c.user_id == verification.user_id)
                    & (_verifications.c.issued_at <= to_iso(cutoff))
                )
                .values(
                    code=verification.code,
                    issued_at=verification.issued_at,
                    expires_at=verification.expires_at,
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, now: datetime) -> tuple[int, int]:
        """Delete unusable sessions and expired verification codes.

        A session is unusable once revoked or past its refresh window.
        Returns (sessions_removed, verifications_removed).
        """
        cutoff = to_iso(now)
        with self.engine.begin() as conn:
            sessions = conn.execute(
                _sessions.delete().where(
                    _sessions.c.revoked_at.is_not(None) | (_sessions.c.refresh_expires_at < cutoff)
                )
            )
            verifications = conn.execute(_verifications.delete().where(_verifications.c.expires_at < cutoff))
        return sessions.rowcount, verifications.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _user_values(user: User, user_id: str) -> dict:
    return {
        "id": user_id,
        "name": user.name,
        "email": user.email,
        "hashed_password": user.hashed_password,
        "email_verified_at": user.email_verified_at,
        "created_at": user.created_at or _now_iso(),
        "last_password_change": user.last_password_change,
    }


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        hashed_password=row.hashed_password,
        email_verified_at=row.email_verified_at,
        created_at=row.created_at,
        last_password_change=row.last_password_change,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        created_at=row.created_at,
        expires_at=row.expires_at,
        refresh_expires_at=row.refresh_expires_at,
        last_active=row.last_active,
        revoked_at=row.revoked_at,
    )


def _row_to_verification(row) -> VerificationRequest:
    return VerificationRequest(
        user_id=row.user_id,
        code=row.code,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
    )
