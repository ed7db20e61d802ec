from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tessera.service.errors import ErrorCode

MAX_PASSWORD_LENGTH = 128
MAX_NAME_LENGTH = 50


class ErrorBody(BaseModel):
    """Failure envelope; ``error`` is always one of the closed error codes."""

    success: bool = False
    error: str
    message: str
    details: Optional[Any] = None

    @field_validator("error")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        valid = {code.value for code in ErrorCode}
        if value not in valid:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(valid))}"
            )
        return value


class Envelope(BaseModel):
    success: bool = True
    data: Optional[Any] = None
    message: str = ""


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(ch for ch in normalized if unicodedata.category(ch) != "Cf")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_name(value: str) -> str:
    value = _normalize_unicode(value).strip()
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"name must be at most {MAX_NAME_LENGTH} characters")
    return value


class _CamelModel(BaseModel):
    """Accepts both ``first_name`` and ``firstName`` style keys."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegisterRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=512, alias="refreshToken")


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(
        ..., min_length=1, max_length=MAX_PASSWORD_LENGTH, alias="currentPassword"
    )
    new_password: str = Field(
        ..., min_length=1, max_length=MAX_PASSWORD_LENGTH, alias="newPassword"
    )


class AssignRoleRequest(_CamelModel):
    user_id: str = Field(..., min_length=1, max_length=64, alias="userId")
    role_name: str = Field(..., min_length=1, max_length=64, alias="roleName")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")

    @field_validator("expires_at")
    @classmethod
    def _future_expiry(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        if value <= datetime.now(timezone.utc):
            raise ValueError("expires_at must be in the future")
        return value


class UserResponse(BaseModel):
    id: str
    email: str
    firstName: str
    lastName: str
    isActive: bool
    isVerified: bool
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    lastLoginAt: Optional[datetime] = None
    createdAt: Optional[datetime] = None


class TokenResponse(BaseModel):
    accessToken: str
    refreshToken: Optional[str] = None
    tokenType: str = "Bearer"
    expiresIn: int
    sessionId: str


class LoginResponse(TokenResponse):
    user: UserResponse


class SessionResponse(BaseModel):
    sessionId: str
    ipAddr: Optional[str] = None
    userAgent: Optional[str] = None
    createdAt: datetime
    lastActivity: datetime
    expiresAt: datetime
    current: bool = False


class RoleResponse(BaseModel):
    name: str
    displayName: str
    description: str = ""
    isSystemRole: bool = False
    permissions: List[str] = Field(default_factory=list)
    userCount: int = 0


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class UserListResponse(BaseModel):
    users: List[UserResponse]
    pagination: Pagination


class AuditEntryResponse(BaseModel):
    id: Optional[int] = None
    action: str
    success: bool
    userId: Optional[int] = None
    sessionId: Optional[str] = None
    resource: Optional[str] = None
    resourceId: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    errorMessage: Optional[str] = None
    ipAddr: Optional[str] = None
    createdAt: datetime


class KeyRotationResponse(BaseModel):
    keyId: str
    algorithm: str
    createdAt: datetime
