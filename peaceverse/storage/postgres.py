from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from peaceverse.logging import get_logger, sanitize_error_message
from peaceverse.storage.errors import ConstraintViolation, StorageUnavailable
from peaceverse.storage.models import Role, UserAccount, UserPage, utcnow

_USER_COLUMNS = (
    "id",
    "email",
    "password_hash",
    "phone_number",
    "role",
    "is_active",
    "is_email_verified",
    "is_phone_verified",
    "email_otp",
    "email_otp_expiry",
    "phone_otp",
    "phone_otp_expiry",
    "is_logged_in",
    "last_login",
    "created_at",
    "updated_at",
)


class PostgresStore:
    """Postgres-backed credential store for user accounts."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable",
                error=sanitize_error_message(str(exc)),
            )
            raise StorageUnavailable(
                "credential store unavailable", backend="postgres"
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``web_user`` table and its indexes if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS web_user (
                    id UUID PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    phone_number TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'user'
                        CHECK (role IN ('user', 'editor', 'admin')),
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    is_phone_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    email_otp TEXT,
                    email_otp_expiry TIMESTAMPTZ,
                    phone_otp TEXT,
                    phone_otp_expiry TIMESTAMPTZ,
                    is_logged_in BOOLEAN NOT NULL DEFAULT FALSE,
                    last_login TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS web_user_unverified_idx
                ON web_user (created_at)
                WHERE NOT is_email_verified AND NOT is_phone_verified
                """
            )

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> UserAccount:
        payload = {name: row.get(name) for name in _USER_COLUMNS}
        payload["id"] = str(payload["id"])
        payload["role"] = Role(payload.get("role") or Role.USER.value)
        return UserAccount(**payload)

    @staticmethod
    def _user_params(user: UserAccount) -> List[Any]:
        values = [getattr(user, name) for name in _USER_COLUMNS]
        values[_USER_COLUMNS.index("role")] = user.role.value
        return values

    # lookups
    def get_user(self, user_id: str) -> Optional[UserAccount]:
        try:
            uuid.UUID(user_id)
        except (TypeError, ValueError):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM web_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM web_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self, *, search: Optional[str] = None, offset: int = 0, limit: int = 10
    ) -> UserPage:
        clauses = ""
        params: List[Any] = []
        needle = (search or "").strip()
        if needle:
            clauses = "WHERE email ILIKE %s OR role ILIKE %s"
            pattern = f"%{needle}%"
            params.extend([pattern, pattern])
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM web_user {clauses}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM web_user {clauses} ORDER BY created_at DESC OFFSET %s LIMIT %s",
                [*params, offset, limit],
            ).fetchall()
        return UserPage(
            items=[self._row_to_user(row) for row in rows],
            total=int(total_row["total"]) if total_row else 0,
        )

    def list_unverified_before(self, cutoff: datetime) -> List[UserAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM web_user
                WHERE NOT is_email_verified AND NOT is_phone_verified AND created_at < %s
                """,
                (cutoff,),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # mutations
    def create_user(self, user: UserAccount) -> UserAccount:
        placeholders = ", ".join(["%s"] * len(_USER_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO web_user ({', '.join(_USER_COLUMNS)}) VALUES ({placeholders})",
                    self._user_params(user),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def save_user(self, user: UserAccount) -> UserAccount:
        user.updated_at = utcnow()
        columns = [name for name in _USER_COLUMNS if name not in {"id", "created_at"}]
        assignments = ", ".join(f"{name} = %s" for name in columns)
        params = [
            user.role.value if name == "role" else getattr(user, name)
            for name in columns
        ]
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    f"UPDATE web_user SET {assignments} WHERE id = %s",
                    [*params, user.id],
                )
                if cur.rowcount == 0:
                    raise KeyError(user.id)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def delete_user(self, user_id: str) -> bool:
        return self.delete_users([user_id]) == 1

    def delete_users(self, user_ids: Iterable[str]) -> int:
        ids = list(set(user_ids))
        if not ids:
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM web_user WHERE id::text = ANY(%s)", (ids,)
            )
            return cur.rowcount

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()
