from __future__ import annotations

import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkit.logging import get_logger
from authkit.storage.errors import ConstraintViolation, StorageUnavailable
from authkit.storage.models import User

_USER_COLUMNS = (
    "id, external_id, email, name, password_hash, avatar_url, provider, "
    "provider_id, created_at, updated_at, deleted_at"
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        external_id VARCHAR(100) NOT NULL UNIQUE,
        email TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        password_hash TEXT,
        avatar_url TEXT,
        provider TEXT,
        provider_id TEXT,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_live_idx
        ON app_user (lower(email)) WHERE deleted_at IS NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS app_user_provider_live_idx
        ON app_user (provider, provider_id)
        WHERE deleted_at IS NULL AND provider IS NOT NULL
    """,
)


def _constraint_field(exc: errors.UniqueViolation) -> str:
    name = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if "provider" in name:
        return "provider_id"
    if "external_id" in name:
        return "external_id"
    return "email"


class PostgresStore:
    """Postgres-backed identity store.

    Connection establishment is retried with exponential backoff only while
    the store is being constructed; afterwards a driver or pool failure maps
    to ``StorageUnavailable`` and the caller decides what to do.
    """

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_ms: int = 5000,
        pool_timeout: float = 5.0,
        connect_retries: int = 5,
        connect_backoff: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.statement_timeout_ms = int(statement_timeout_ms)
        self.pool_timeout = pool_timeout
        self.pool = self._open_with_retry(connect_retries, connect_backoff, sleep)
        self._ensure_schema()

    def _new_pool(self) -> ConnectionPool:
        return ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            timeout=self.pool_timeout,
            open=False,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={self.statement_timeout_ms}",
            },
        )

    def _open_with_retry(
        self,
        attempts: int,
        backoff: float,
        sleep: Callable[[float], None],
    ) -> ConnectionPool:
        delay = backoff
        for attempt in range(1, attempts + 1):
            # a pool that failed to open is closed for good; each attempt needs a new one
            pool = self._new_pool()
            try:
                pool.open(wait=True, timeout=self.pool_timeout)
                if attempt > 1:
                    self.logger.info("postgres_connected", attempt=attempt)
                return pool
            except psycopg.OperationalError as exc:
                pool.close()
                if attempt >= attempts:
                    self.logger.error(
                        "postgres_connect_failed", attempts=attempts, error=str(exc)
                    )
                    raise StorageUnavailable(
                        f"database unreachable after {attempts} attempts"
                    ) from exc
                self.logger.warning(
                    "postgres_connect_retry",
                    attempt=attempt,
                    retry_in_seconds=delay,
                    error=str(exc),
                )
                sleep(delay)
                delay *= 2
        raise StorageUnavailable("database connect attempts must be at least 1")

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.warning("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table and its partial unique indexes."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=int(row["id"]),
            external_id=row["external_id"],
            email=row["email"],
            name=row.get("name") or "",
            password_hash=row.get("password_hash"),
            avatar_url=row.get("avatar_url"),
            provider=row.get("provider"),
            provider_id=row.get("provider_id"),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at") or datetime.utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    def _fetch_one(self, sql: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    # user
    def create_user(self, user: User) -> User:
        now = datetime.utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (external_id, email, name, password_hash, avatar_url,
                                          provider, provider_id, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        user.external_id,
                        user.email,
                        user.name,
                        user.password_hash,
                        user.avatar_url,
                        user.provider,
                        user.provider_id,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s AND deleted_at IS NULL",
            (user_id,),
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM app_user WHERE lower(email) = lower(%s) AND deleted_at IS NULL",
            (email,),
        )

    def get_user_by_external_id(self, external_id: str) -> Optional[User]:
        return self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM app_user WHERE external_id = %s AND deleted_at IS NULL",
            (external_id,),
        )

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        return self._fetch_one(
            f"SELECT {_USER_COLUMNS} FROM app_user "
            "WHERE provider = %s AND provider_id = %s AND deleted_at IS NULL",
            (provider, provider_id),
        )

    def update_user(self, user: User) -> Optional[User]:
        try:
            return self._fetch_one(
                f"""
                UPDATE app_user
                SET email = %s, name = %s, password_hash = %s, avatar_url = %s,
                    provider = %s, provider_id = %s, updated_at = %s
                WHERE id = %s AND deleted_at IS NULL
                RETURNING {_USER_COLUMNS}
                """,
                (
                    user.email,
                    user.name,
                    user.password_hash,
                    user.avatar_url,
                    user.provider,
                    user.provider_id,
                    datetime.utcnow(),
                    user.id,
                ),
            )
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET deleted_at = %s WHERE id = %s AND deleted_at IS NULL RETURNING id",
                (datetime.utcnow(), user_id),
            ).fetchone()
        return bool(row)

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except StorageUnavailable:
            return False
        return True

    def close(self) -> None:
        self.pool.close()
