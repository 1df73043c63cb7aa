from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from termingate.logging import get_logger
from termingate.storage.common import (
    serialize_datetime,
    session_from_dict,
    session_to_dict,
    user_from_row,
    user_to_dict,
    validate_role,
    validate_username,
)
from termingate.storage.errors import ConstraintViolation, StoreUnavailable
from termingate.storage.models import Session, User


class MemoryStore:
    """File-backed store for users, credentials and sessions.

    State is held in dicts and written to ``<fs_root>/state/session_store.json``
    after every mutation, so sessions survive a process restart. Suitable for
    the single-instance deployment; use ``PostgresStore`` for anything shared.
    """

    def __init__(self, fs_root: str = "/tmp/termingate") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can nest under a public method's lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "session_store.json"

    def verify_connection(self) -> None:
        path = self._state_path()
        if not os.access(path.parent, os.W_OK):
            raise StoreUnavailable(f"state directory not writable: {path.parent}")

    # users
    def create_user(
        self,
        username: str,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        username = validate_username(username)
        validate_role(role)
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User.new(username, role=role, meta=dict(meta) if meta else None)
            user.is_active = is_active
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username == username), None
            )

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(
                self.users.values(), key=lambda u: u.created_at, reverse=True
            )[:limit]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        validate_role(role)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def touch_last_login(self, user_id: str, when: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = when
            self._persist_state()

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def save_session(self, session: Session) -> None:
        with self._data_lock:
            previous = self.sessions.get(session.id)
            self.sessions[session.id] = session_from_dict(session_to_dict(session))
            try:
                self._persist_state()
            except StoreUnavailable:
                # Keep memory consistent with what is on disk
                if previous is None:
                    self.sessions.pop(session.id, None)
                else:
                    self.sessions[session.id] = previous
                raise
            session.is_new = False

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                return None
            # Hand out a copy so request-local edits only land through save_session
            return session_from_dict(session_to_dict(sess))

    def touch_session(self, session_id: str, expires_at: datetime) -> bool:
        """Move ``expires_at`` on an existing session; False when it is gone."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                return False
            previous = sess.expires_at
            sess.expires_at = expires_at
            try:
                self._persist_state()
            except StoreUnavailable:
                sess.expires_at = previous
                raise
            return True

    def set_csrf_token_if_absent(self, session_id: str, token: str) -> Optional[str]:
        """Store ``token`` unless the session already holds one.

        Returns the token now stored, or None when the session is gone.
        """
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                return None
            if sess.csrf_token:
                return sess.csrf_token
            sess.csrf_token = token
            try:
                self._persist_state()
            except StoreUnavailable:
                sess.csrf_token = None
                raise
            return token

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def delete_expired_sessions(self, now: Optional[datetime] = None) -> int:
        cutoff = now or datetime.now(timezone.utc)
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.expires_at <= cutoff]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [user_to_dict(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [session_to_dict(s) for s in self.sessions.values()],
            "saved_at": serialize_datetime(datetime.now(timezone.utc)),
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreUnavailable(f"failed to persist session state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(f"failed to load session state: {exc}") from exc
        self.users = {u["id"]: user_from_row(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: session_from_dict(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "session_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            path=str(path),
        )
        return True
