from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from termingate.storage.models import AppointmentRequest, Principal, User

MAX_STRING_LENGTH = 65536


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize so visually identical usernames compare equal."""
    return unicodedata.normalize("NFKC", value)


class ErrorResponse(BaseModel):
    success: Literal[False] = False
    message: str
    code: Optional[str] = None
    details: Optional[Any] = None
    requiresLogin: Optional[bool] = None
    reason: Optional[str] = None
    retryAfter: Optional[int] = None

    def to_content(self) -> dict:
        return self.model_dump(exclude_none=True)


class CsrfTokenResponse(BaseModel):
    success: bool = True
    csrfToken: str


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=1024)
    csrf: Optional[str] = Field(default=None, alias="_csrf")

    @field_validator("username")
    @classmethod
    def _clean_username(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class LoginResponse(BaseModel):
    success: bool = True
    redirect: str = "/admin"
    message: str = "login successful"


class MessageResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None


class PrincipalResponse(BaseModel):
    user_id: str
    username: str
    role: str
    login_time: datetime

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            user_id=principal.user_id,
            username=principal.username,
            role=principal.role,
            login_time=principal.login_time,
        )


class AdminLandingResponse(BaseModel):
    success: bool = True
    user: PrincipalResponse


class UserCreateRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    password: str = Field(..., min_length=8, max_length=1024)
    role: Literal["admin", "user"] = "user"

    @field_validator("username")
    @classmethod
    def _clean_username(cls, value: str) -> str:
        return _normalize_unicode(value).strip()


class UserResponse(BaseModel):
    id: str
    username: str
    role: str
    is_active: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            role=user.role,
            is_active=user.is_active,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class UserListResponse(BaseModel):
    success: bool = True
    users: List[UserResponse]


class AppointmentCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    problem: Dict[str, int] = Field(default_factory=dict)
    beschreibung: Optional[str] = Field(default=None, max_length=MAX_STRING_LENGTH)
    termine: List[Any] = Field(default_factory=list, max_length=50)
    kontakt: Dict[str, Any]
    csrf: Optional[str] = Field(default=None, alias="_csrf")


class AppointmentStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    csrf: Optional[str] = Field(default=None, alias="_csrf")


class AppointmentRejectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = Field(default=None, max_length=2000)
    csrf: Optional[str] = Field(default=None, alias="_csrf")


class AppointmentResponse(BaseModel):
    id: int
    status: str
    payload: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    rejection_reason: Optional[str] = None

    @classmethod
    def from_item(cls, item: AppointmentRequest) -> "AppointmentResponse":
        return cls(
            id=item.id,
            status=item.status,
            payload=item.payload,
            created_at=item.created_at,
            updated_at=item.updated_at,
            rejection_reason=item.rejection_reason,
        )


class HealthResponse(BaseModel):
    status: Literal["OK", "DEGRADED"]
    timestamp: datetime
    environment: str
    version: str
    checks: Dict[str, str]
