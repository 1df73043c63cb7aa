from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from termingate.logging import get_logger
from termingate.storage.common import (
    serialize_datetime,
    session_from_dict,
    session_to_dict,
    user_from_row,
    validate_role,
    validate_username,
)
from termingate.storage.errors import ConstraintViolation, StoreUnavailable
from termingate.storage.models import Session, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS http_session (
        id TEXT PRIMARY KEY,
        data JSONB NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS http_session_expires_idx ON http_session (expires_at)",
)


class PostgresStore:
    """Postgres-backed store for users, credentials and sessions."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user, credential and session tables when missing."""
        try:
            with self._connect() as conn:
                for statement in _SCHEMA_STATEMENTS:
                    conn.execute(statement)
        except errors.Error as exc:
            raise StoreUnavailable(f"schema setup failed: {exc}") from exc

    def verify_connection(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except errors.Error as exc:
            raise StoreUnavailable(str(exc)) from exc

    # users
    def create_user(
        self,
        username: str,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        username = validate_username(username)
        validate_role(role)
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, role, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        username,
                        role,
                        is_active,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [user_from_row(row) for row in rows]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        validate_role(role)
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return user_from_row(row) if row else None

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (when, user_id)
            )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def save_session(self, session: Session) -> None:
        payload = json.dumps(session_to_dict(session))
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO http_session (id, data, expires_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET data = EXCLUDED.data, expires_at = EXCLUDED.expires_at
                    """,
                    (session.id, payload, session.expires_at),
                )
        except errors.Error as exc:
            raise StoreUnavailable(f"session save failed: {exc}") from exc
        session.is_new = False

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT data FROM http_session WHERE id = %s", (session_id,)
                ).fetchone()
        except errors.Error as exc:
            raise StoreUnavailable(f"session load failed: {exc}") from exc
        if not row:
            return None
        data: Any = row["data"]
        if isinstance(data, str):
            data = json.loads(data)
        return session_from_dict(data)

    def touch_session(self, session_id: str, expires_at: datetime) -> bool:
        """Move ``expires_at`` on an existing row; False when the row is gone."""
        try:
            with self._connect() as conn:
                result = conn.execute(
                    """
                    UPDATE http_session
                    SET expires_at = %s,
                        data = jsonb_set(data, '{expires_at}', to_jsonb(%s::text))
                    WHERE id = %s
                    """,
                    (expires_at, serialize_datetime(expires_at), session_id),
                )
                return result.rowcount > 0
        except errors.Error as exc:
            raise StoreUnavailable(f"session touch failed: {exc}") from exc

    def set_csrf_token_if_absent(self, session_id: str, token: str) -> Optional[str]:
        """Store ``token`` unless the row already holds one.

        Returns the token now stored, or None when the row is gone.
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE http_session
                    SET data = jsonb_set(data, '{csrf_token}', to_jsonb(%s::text))
                    WHERE id = %s AND data->>'csrf_token' IS NULL
                    RETURNING data->>'csrf_token' AS csrf_token
                    """,
                    (token, session_id),
                ).fetchone()
                if row is None:
                    row = conn.execute(
                        "SELECT data->>'csrf_token' AS csrf_token FROM http_session WHERE id = %s",
                        (session_id,),
                    ).fetchone()
        except errors.Error as exc:
            raise StoreUnavailable(f"session token update failed: {exc}") from exc
        return row["csrf_token"] if row else None

    def delete_session(self, session_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    "DELETE FROM http_session WHERE id = %s", (session_id,)
                )
                return result.rowcount > 0
        except errors.Error as exc:
            raise StoreUnavailable(f"session delete failed: {exc}") from exc

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        cutoff = now or datetime.now(timezone.utc)
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "DELETE FROM http_session WHERE expires_at <= %s RETURNING id",
                    (cutoff,),
                ).fetchall()
        except errors.Error as exc:
            raise StoreUnavailable(f"session sweep failed: {exc}") from exc
        return len(rows)

    def close(self) -> None:
        self.pool.close()
