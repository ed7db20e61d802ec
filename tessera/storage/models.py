from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    uuid: str
    email: str
    password_hash: str
    password_algo: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    is_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Permission:
    id: int
    name: str
    resource: str
    action: str
    display_name: str = ""
    description: str = ""


@dataclass
class Role:
    id: int
    name: str
    display_name: str
    description: str = ""
    # Ordered permission names; "*" grants everything, "resource.*" a whole resource
    permissions: List[str] = field(default_factory=list)
    is_system_role: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserRoleAssignment:
    user_id: int
    role_id: int
    assigned_by: Optional[int] = None
    assigned_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_current(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass
class Session:
    session_id: str
    user_id: int
    jwt_jti: str
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: int,
        jwt_jti: str,
        ttl_minutes: int,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            jwt_jti=jwt_jti,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_addr=ip_addr,
            user_agent=user_agent,
            created_at=now,
            last_activity=now,
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now


@dataclass
class RefreshToken:
    """Single-use refresh credential; only the hash of the secret is kept."""

    id: int
    token_hash: str
    user_id: int
    session_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[int] = None
    revoke_reason: Optional[str] = None

    def is_redeemable(self, now: datetime) -> bool:
        return self.used_at is None and not self.is_revoked and self.expires_at > now


@dataclass
class SigningKeyRecord:
    key_id: str
    algorithm: str
    public_key: str
    private_key_encrypted: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    rotated_at: Optional[datetime] = None
    # End of the verification window once retired
    expires_at: Optional[datetime] = None
    key_metadata: Dict[str, Any] = field(default_factory=dict)

    def verifies_at(self, now: datetime) -> bool:
        if self.is_active:
            return True
        return self.expires_at is not None and self.expires_at > now


@dataclass(frozen=True)
class AuditLogEntry:
    action: str
    success: bool
    user_id: Optional[int] = None
    session_id: Optional[str] = None
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None
