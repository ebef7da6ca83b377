"""
auth/store.py -- SQLAlchemy Core persistence layer for users and roles.

Pattern: Repository + Data Mapper (same as cmdb/store.py).
UserStore is the repository; _row_to_user / _row_to_role are the mappers.
Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(user_id, organization_id) on roles is enforced both by the schema
  and by attach_role(), which returns the existing row instead of inserting
  a second one.

Roles reference organizations that live in the CMDB database. There is no
cross-database foreign key; organization deletion checks count_roles_for_org()
before removing anything.

Layer rule: no imports from api/ or cmdb/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from auth.models import OrgRole, Role, User
from core.config import get_settings
from core.errors import StorageError

logger = logging.getLogger("vulnconsole.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(255), nullable=False, server_default=""),
    Column("last_name", String(255), nullable=False, server_default=""),
    Column("user_type", String(30), nullable=False, server_default="standard"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("organization_id", Integer, nullable=False),
    Column("role", String(10), nullable=False, server_default="user"),
    Column("approved", Boolean, nullable=False, server_default="0"),
    Column("approved_by", Integer),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "organization_id", name="uq_role_user_org"),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new connection.

    SQLite PRAGMAs are not inherited by new connections from the pool, and
    foreign_keys must be on for the roles -> users cascade to fire.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Role entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@x.gov"))
        store.attach_role(uid, org_id)
        user = store.get_user(uid)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().auth_database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        try:
            _metadata.create_all(self.engine)
        except OperationalError as exc:
            raise StorageError("auth database unavailable") from exc

    @contextmanager
    def _connect(self, begin: bool = False) -> Iterator[Connection]:
        """Yield a connection, translating driver failures into StorageError.

        begin=True wraps the block in a transaction that commits on exit.
        IntegrityError is left alone -- callers translate it themselves.
        """
        try:
            with self.engine.begin() if begin else self.engine.connect() as conn:
                yield conn
        except OperationalError as exc:
            logger.error("auth database error: %s", exc)
            raise StorageError("auth database error") from exc

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers translate that into a 400 conflict.
        """
        now = _now_iso()
        with self._connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email.lower(),
                    first_name=user.first_name,
                    last_name=user.last_name,
                    user_type=user.user_type,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user(self, user_id: int) -> User | None:
        """Look up a user with its roles. Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            role_rows = conn.execute(
                _roles.select().where(_roles.c.user_id == user_id).order_by(_roles.c.created_at, _roles.c.id)
            ).fetchall()
        user = _row_to_user(row)
        user.roles = [_row_to_role(r) for r in role_rows]
        return user

    def get_by_email(self, email: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.lower())).fetchone()
        return self.get_user(row.id) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users with their roles, ordered by email."""
        with self._connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
            role_rows = conn.execute(_roles.select().order_by(_roles.c.created_at, _roles.c.id)).fetchall()
        by_user: dict[int, list[Role]] = {}
        for r in role_rows:
            by_user.setdefault(r.user_id, []).append(_row_to_role(r))
        users = []
        for row in rows:
            user = _row_to_user(row)
            user.roles = by_user.get(user.id, [])
            users.append(user)
        return users

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields: first_name, last_name, user_type.

        Returns True if a row was updated, False if user_id was not found.
        """
        fields["updated_at"] = _now_iso()
        with self._connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: int) -> int:
        """Delete a user and its roles. Returns the number of users removed.

        Roles are deleted explicitly as well as by the FK cascade so that
        backends without ON DELETE CASCADE behave the same.
        """
        with self._connect() as conn:
            conn.execute(_roles.delete().where(_roles.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def attach_role(
        self,
        user_id: int,
        organization_id: int,
        role: str = OrgRole.USER.value,
        approved: bool = False,
        approved_by: int | None = None,
    ) -> tuple[Role, bool]:
        """Bind a user to an organization unless a Role already exists.

        Returns (role, created). An existing Role is returned untouched --
        re-attaching never changes role or approval.
        """
        with self._connect(begin=True) as conn:
            existing = conn.execute(
                _roles.select().where((_roles.c.user_id == user_id) & (_roles.c.organization_id == organization_id))
            ).fetchone()
            if existing is not None:
                return _row_to_role(existing), False
            result = conn.execute(
                _roles.insert().values(
                    user_id=user_id,
                    organization_id=organization_id,
                    role=role,
                    approved=approved,
                    approved_by=approved_by if approved else None,
                    created_at=_now_iso(),
                )
            )
            role_id = result.inserted_primary_key[0]
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row), True

    def get_role(self, role_id: int) -> Role | None:
        with self._connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_roles(self, user_id: int) -> list[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                _roles.select().where(_roles.c.user_id == user_id).order_by(_roles.c.created_at, _roles.c.id)
            ).fetchall()
        return [_row_to_role(r) for r in rows]

    def list_roles_for_org(self, organization_id: int) -> list[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                _roles.select().where(_roles.c.organization_id == organization_id).order_by(_roles.c.id)
            ).fetchall()
        return [_row_to_role(r) for r in rows]

    def approve_role(self, role_id: int, approved_by: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                _roles.update().where(_roles.c.id == role_id).values(approved=True, approved_by=approved_by)
            )
            conn.commit()
        return result.rowcount > 0

    def remove_role(self, role_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
            conn.commit()
        return result.rowcount

    def count_roles_for_org(self, organization_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_roles).where(_roles.c.organization_id == organization_id)
            ).scalar()
        return result or 0

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(select(1))
        except StorageError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        user_type=row.user_type,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        user_id=row.user_id,
        organization_id=row.organization_id,
        role=row.role,
        approved=bool(row.approved),
        approved_by=row.approved_by,
        created_at=row.created_at,
    )
