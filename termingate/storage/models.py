from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = frozenset({ROLE_ADMIN, ROLE_USER})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    """256-bit opaque session identifier, hex encoded."""
    return secrets.token_hex(32)


@dataclass
class User:
    id: str
    username: str
    role: str = ROLE_USER
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    meta: Dict | None = None

    @classmethod
    def new(cls, username: str, *, role: str = ROLE_USER, meta: Dict | None = None) -> "User":
        return cls(id=str(uuid.uuid4()), username=username, role=role, meta=meta)


@dataclass(frozen=True)
class Principal:
    """Authenticated identity bound to a session.

    Frozen: the role and login facts never change for the lifetime of the
    session; a privilege change goes through a new login and a new session id.
    """

    user_id: str
    username: str
    role: str
    login_time: datetime
    login_ip: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class Session:
    id: str
    created_at: datetime
    expires_at: datetime
    principal: Optional[Principal] = None
    csrf_token: Optional[str] = None
    meta: Dict | None = None
    # Not serialized: True until the record has been written to a store
    is_new: bool = field(default=True, compare=False)

    @classmethod
    def new(cls, ttl_minutes: int = 120, *, meta: Dict | None = None) -> "Session":
        now = utcnow()
        return cls(
            id=new_session_id(),
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            meta=meta,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class AttemptRecord:
    """Failed-login bookkeeping for one (client IP, username) key."""

    count: int
    first_attempt: datetime
    last_attempt: datetime

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "first_attempt": self.first_attempt.isoformat(),
            "last_attempt": self.last_attempt.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AttemptRecord":
        return cls(
            count=int(data["count"]),
            first_attempt=datetime.fromisoformat(data["first_attempt"]),
            last_attempt=datetime.fromisoformat(data["last_attempt"]),
        )


@dataclass
class AppointmentRequest:
    id: int
    payload: Dict
    status: str = "neu"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    rejection_reason: Optional[str] = None
