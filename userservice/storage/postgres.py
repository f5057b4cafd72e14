from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from userservice.logging import get_logger
from userservice.storage.errors import (
    ConstraintViolation,
    StorageError,
    expect_single_row,
)
from userservice.storage.models import Credential

_CREDENTIAL_COLUMNS = (
    "id, name, password_hash, salt, password_algo, login_success, "
    "login_failure, failure_count, mtime, ctime"
)

# Postgres' default constraint names for the credential table
_PKEY_CONSTRAINT = "credential_pkey"
_NAME_CONSTRAINT = "credential_name_key"


class PostgresStore:
    """Postgres-backed credential store; one row per user."""

    def __init__(self, dsn: str, *, statement_timeout_ms: Optional[int] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        conn_kwargs: dict[str, Any] = {"row_factory": dict_row, "autocommit": False}
        if statement_timeout_ms:
            conn_kwargs["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs=conn_kwargs,
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``credential`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credential (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    salt TEXT NOT NULL,
                    password_algo TEXT NOT NULL DEFAULT 'argon2id',
                    login_success TIMESTAMPTZ,
                    login_failure TIMESTAMPTZ,
                    failure_count INTEGER NOT NULL DEFAULT 0 CHECK (failure_count >= 0),
                    mtime TIMESTAMPTZ NOT NULL DEFAULT now(),
                    ctime TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _credential_from_row(row: Mapping[str, Any]) -> Credential:
        return Credential(
            user_id=str(row["id"]),
            name=row["name"],
            password_hash=row["password_hash"],
            salt=row["salt"],
            password_algo=row.get("password_algo") or "argon2id",
            login_success=row.get("login_success"),
            login_failure=row.get("login_failure"),
            failure_count=int(row.get("failure_count") or 0),
            mtime=row["mtime"],
            ctime=row["ctime"],
        )

    def fetch_credential(self, identifier: str) -> Optional[Credential]:
        """Look a credential up by user id or login name; id matches win."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    SELECT {_CREDENTIAL_COLUMNS} FROM credential
                    WHERE id = %s OR name = %s
                    ORDER BY (id = %s) DESC
                    LIMIT 1
                    """,
                    (identifier, identifier, identifier),
                ).fetchone()
        except psycopg.Error as exc:
            raise StorageError("fetch_credential", str(exc)) from exc
        if not row:
            return None
        return self._credential_from_row(row)

    def insert_credential(self, credential: Credential) -> None:
        """Insert a new credential.

        Lookups match an id or a name, so a name equal to an existing user id
        is refused as a name conflict.
        """
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO credential (id, name, password_hash, salt, password_algo, failure_count, mtime, ctime)
                    SELECT %s, %s, %s, %s, %s, %s, %s, %s
                    WHERE NOT EXISTS (SELECT 1 FROM credential WHERE id = %s)
                    """,
                    (
                        credential.user_id,
                        credential.name,
                        credential.password_hash,
                        credential.salt,
                        credential.password_algo,
                        credential.failure_count,
                        credential.mtime,
                        credential.ctime,
                        credential.name,
                    ),
                )
                if cur.rowcount == 0:
                    raise ConstraintViolation("user already exists", {"field": "name"})
                expect_single_row("insert_credential", cur.rowcount, credential.user_id)
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            if constraint == _PKEY_CONSTRAINT:
                raise ConstraintViolation("user id already exists", {"field": "id"}) from exc
            if constraint == _NAME_CONSTRAINT:
                raise ConstraintViolation("user already exists", {"field": "name"}) from exc
            raise StorageError("insert_credential", str(exc)) from exc
        except psycopg.Error as exc:
            raise StorageError("insert_credential", str(exc)) from exc

    def _update_one(self, operation: str, sql: str, params: tuple, user_id: str) -> None:
        try:
            with self._connect() as conn:
                cur = conn.execute(sql, params)
                # Raising inside the block rolls back a multi-row update
                expect_single_row(operation, cur.rowcount, user_id)
        except psycopg.Error as exc:
            raise StorageError(operation, str(exc)) from exc

    def record_login_success(self, user_id: str, when: datetime) -> None:
        self._update_one(
            "record_login_success",
            """
            UPDATE credential
            SET login_success = %s, login_failure = NULL, failure_count = 0
            WHERE id = %s
            """,
            (when, user_id),
            user_id,
        )

    def record_login_failure(self, user_id: str, when: datetime) -> None:
        self._update_one(
            "record_login_failure",
            """
            UPDATE credential
            SET login_failure = %s, failure_count = failure_count + 1
            WHERE id = %s
            """,
            (when, user_id),
            user_id,
        )

    def reset_credential(
        self, user_id: str, password_hash: str, salt: str, when: datetime
    ) -> None:
        self._update_one(
            "reset_credential",
            """
            UPDATE credential
            SET password_hash = %s, salt = %s, login_success = %s,
                login_failure = NULL, failure_count = 0, mtime = %s
            WHERE id = %s
            """,
            (password_hash, salt, when, when, user_id),
            user_id,
        )
