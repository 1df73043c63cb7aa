"""Common storage utilities shared between memory and postgres implementations.

Both backends persist sessions as one JSON document per session id, so the
serialization of the typed ``Session``/``Principal`` records lives here.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from termingate.storage.errors import ConstraintViolation
from termingate.storage.models import ROLES, Principal, Session, User

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 30
_USERNAME_ALLOWED = set(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-"
)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat()


def deserialize_datetime(raw: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken to be UTC."""
    if raw is None or raw == "":
        return None
    value = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def validate_username(username: str) -> str:
    cleaned = (username or "").strip()
    if not USERNAME_MIN_LENGTH <= len(cleaned) <= USERNAME_MAX_LENGTH:
        raise ConstraintViolation(
            "username must be 3-30 characters", {"field": "username"}
        )
    if any(ch not in _USERNAME_ALLOWED for ch in cleaned):
        raise ConstraintViolation(
            "username may only contain letters, digits, '_' and '-'",
            {"field": "username"},
        )
    return cleaned


def validate_role(role: str) -> str:
    if role not in ROLES:
        raise ConstraintViolation("unknown role", {"field": "role", "role": role})
    return role


def principal_to_dict(principal: Optional[Principal]) -> Optional[Dict[str, Any]]:
    if principal is None:
        return None
    return {
        "user_id": principal.user_id,
        "username": principal.username,
        "role": principal.role,
        "login_time": serialize_datetime(principal.login_time),
        "login_ip": principal.login_ip,
        "user_agent": principal.user_agent,
    }


def principal_from_dict(data: Optional[Dict[str, Any]]) -> Optional[Principal]:
    if not data:
        return None
    return Principal(
        user_id=str(data["user_id"]),
        username=data["username"],
        role=data["role"],
        login_time=deserialize_datetime(data["login_time"]),
        login_ip=data.get("login_ip"),
        user_agent=data.get("user_agent"),
    )


def session_to_dict(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "created_at": serialize_datetime(session.created_at),
        "expires_at": serialize_datetime(session.expires_at),
        "principal": principal_to_dict(session.principal),
        "csrf_token": session.csrf_token,
        "meta": session.meta,
    }


def session_from_dict(data: Dict[str, Any]) -> Session:
    return Session(
        id=data["id"],
        created_at=deserialize_datetime(data["created_at"]),
        expires_at=deserialize_datetime(data["expires_at"]),
        principal=principal_from_dict(data.get("principal")),
        csrf_token=data.get("csrf_token"),
        meta=data.get("meta"),
        is_new=False,
    )


def user_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "role": user.role,
        "is_active": user.is_active,
        "created_at": serialize_datetime(user.created_at),
        "last_login_at": serialize_datetime(user.last_login_at),
        "meta": user.meta,
    }


def user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        username=row["username"],
        role=row.get("role", "user"),
        is_active=row.get("is_active", True),
        created_at=deserialize_datetime(row.get("created_at")) or datetime.now(timezone.utc),
        last_login_at=deserialize_datetime(row.get("last_login_at")),
        meta=row.get("meta"),
    )
