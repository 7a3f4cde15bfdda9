"""
auth/store.py -- SQLAlchemy Core persistence layer for user identities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper.
Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  [S1] Email uniqueness is case-insensitive: emails are lower-cased by
       auth.models.new_user() and by every lookup, and the column carries a
       UNIQUE constraint so a concurrent duplicate registration fails with
       IntegrityError instead of creating a second record.

  [S2] Token consumption, password reset, role changes and deletion are each a
       single conditional UPDATE/DELETE. The condition (token matches, token
       not expired, not the last admin) is evaluated by the database in the
       same statement that mutates the row, so two concurrent requests cannot
       both pass a check-then-act window.

DB path: auth/farmassist_auth.db unless DATABASE_URL is set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Role, User, normalize_email

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'farmassist_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # [S1] stored lower-case
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default=Role.FARMER.value),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("phone", String(50), nullable=False, server_default=""),
    Column("location", String(255), nullable=False, server_default=""),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("verification_token", String(128), index=True),
    Column("reset_password_token", String(64), index=True),  # SHA-256 hex of the raw token
    Column("reset_password_expire", Float),  # epoch seconds
    Column("last_login", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _admin_count():
    admins = _users.alias("admins")
    return select(func.count()).select_from(admins).where(admins.c.role == Role.ADMIN.value).scalar_subquery()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore()
        uid = store.create_user(new_user("a@b.io", hash_password("secret")))
        user = store.get_by_email("A@B.io")
        store.close()
    """

    _PROFILE_FIELDS: frozenset = frozenset({"first_name", "last_name", "phone", "location"})

    def __init__(self, db_url: str = "") -> None:
        db_url = db_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists [S1].
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    phone=user.phone,
                    location=user.location,
                    is_verified=1 if user.is_verified else 0,
                    verification_token=user.verification_token,
                    created_at=user.created_at or _now_iso(),
                    updated_at=user.updated_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(
        self,
        page: int = 1,
        limit: int = 10,
        role: Role | None = None,
        verified: bool | None = None,
        search: str = "",
    ) -> tuple[list[User], int]:
        """Return one page of users (newest first) and the total match count.

        search matches first name, last name or email, case-insensitively.
        """
        conditions = []
        if role is not None:
            conditions.append(_users.c.role == Role(role).value)
        if verified is not None:
            conditions.append(_users.c.is_verified == (1 if verified else 0))
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(
                or_(
                    func.lower(_users.c.first_name).like(pattern),
                    func.lower(_users.c.last_name).like(pattern),
                    _users.c.email.like(pattern),
                )
            )

        query = _users.select().where(*conditions)
        count_query = select(func.count()).select_from(_users).where(*conditions)
        offset = (max(page, 1) - 1) * limit
        with self.engine.connect() as conn:
            total = conn.execute(count_query).scalar() or 0
            rows = conn.execute(
                query.order_by(_users.c.created_at.desc(), _users.c.id.desc()).limit(limit).offset(offset)
            ).fetchall()
        return [_row_to_user(r) for r in rows], total

    def count_by_role(self) -> dict[str, int]:
        """Return {role: count} for every role, zero-filled."""
        counts = {r.value: 0 for r in Role}
        with self.engine.connect() as conn:
            rows = conn.execute(select(_users.c.role, func.count()).group_by(_users.c.role)).fetchall()
        for role, count in rows:
            counts[role] = count
        return counts

    def count_verified(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users).where(_users.c.is_verified == 1)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update_profile(self, user_id: int, **fields) -> bool:
        """Update profile fields only. Credential and privilege fields are ignored.

        Returns True if a row was updated, False if user_id was not found.
        """
        values = {k: v for k, v in fields.items() if k in self._PROFILE_FIELDS and v is not None}
        if not values:
            return self.get_by_id(user_id) is not None
        values["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def update_password(self, user_id: int, hashed_password: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=hashed_password, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def update_role(self, user_id: int, role: Role) -> bool:
        """Change a user's role unless that would demote the last admin [S2].

        Returns True if the row changed. False means the user does not exist
        or is the only remaining admin and the new role is not admin.
        """
        role = Role(role)
        stmt = _users.update().where(_users.c.id == user_id)
        if role is not Role.ADMIN:
            stmt = stmt.where(or_(_users.c.role != Role.ADMIN.value, _admin_count() > 1))
        with self.engine.connect() as conn:
            result = conn.execute(stmt.values(role=role.value, updated_at=_now_iso()))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> bool:
        """Delete a user unless they are the last admin [S2].

        Returns True if deleted. False means the user does not exist or is the
        only remaining admin; callers distinguish the two with get_by_id().
        """
        stmt = _users.delete().where(
            (_users.c.id == user_id) & or_(_users.c.role != Role.ADMIN.value, _admin_count() > 1)
        )
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Single-use tokens
    # ------------------------------------------------------------------

    def consume_verification_token(self, token: str) -> bool:
        """Mark the owning user verified and clear the token in one statement [S2].

        Returns False if no user holds this token (unknown or already used).
        """
        if not token:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.verification_token == token)
                .values(is_verified=1, verification_token=None, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def set_reset_token(self, user_id: int, token_hash: str, expires_at: float) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(reset_password_token=token_hash, reset_password_expire=expires_at)
            )
            conn.commit()

    def consume_reset_token(self, token_hash: str, hashed_password: str, now: float | None = None) -> User | None:
        """Set a new password if the reset token is known and unexpired [S2].

        The token is cleared in the same statement, so it works exactly once.
        Returns the updated user, or None if the token was unknown, expired or
        already consumed.
        """
        now = time.time() if now is None else now
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.reset_password_token == token_hash)).fetchone()
            if row is None:
                return None
            result = conn.execute(
                _users.update()
                .where(
                    (_users.c.id == row.id)
                    & (_users.c.reset_password_token == token_hash)
                    & (_users.c.reset_password_expire > now)
                )
                .values(
                    hashed_password=hashed_password,
                    reset_password_token=None,
                    reset_password_expire=None,
                    updated_at=_now_iso(),
                )
            )
            conn.commit()
        if result.rowcount == 0:
            return None
        return self.get_by_id(row.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    m = row._mapping
    return User(
        id=m["id"],
        email=m["email"],
        hashed_password=m["hashed_password"],
        role=Role(m["role"]),
        first_name=m["first_name"] or "",
        last_name=m["last_name"] or "",
        phone=m["phone"] or "",
        location=m["location"] or "",
        is_verified=bool(m["is_verified"]),
        verification_token=m["verification_token"],
        reset_password_token=m["reset_password_token"],
        reset_password_expire=m["reset_password_expire"],
        last_login=m["last_login"],
        created_at=m["created_at"],
        updated_at=m["updated_at"],
    )
