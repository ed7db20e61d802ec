from __future__ import annotations

import asyncio
from typing import Optional, Union

from fastapi import APIRouter, Depends, Path, Query, Request

from tessera.api.dependencies import (
    client_ip,
    get_current_user,
    request_metadata,
    require_ownership,
    require_permission,
    require_role,
)
from tessera.api.schemas import (
    AssignRoleRequest,
    AuditEntryResponse,
    ChangePasswordRequest,
    Envelope,
    KeyRotationResponse,
    LoginRequest,
    LoginResponse,
    Pagination,
    RefreshRequest,
    RegisterRequest,
    RoleResponse,
    SessionResponse,
    TokenResponse,
    UserListResponse,
    UserResponse,
)
from tessera.logging import get_logger
from tessera.service.errors import RateLimitedError
from tessera.service.guard import AuthContext
from tessera.service.runtime import check_rate_limit, get_runtime
from tessera.service.sessions import AuthResult, UserProfile
from tessera.storage.models import AuditLogEntry, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int = 60) -> None:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, retry_after=reset_seconds)
        raise RateLimitedError(retry_after=max(1, reset_seconds))


def _user_ref(value: str) -> Union[int, str]:
    return int(value) if value.isdigit() else value


def _user_response(profile: UserProfile) -> UserResponse:
    user = profile.user
    return UserResponse(
        id=user.uuid,
        email=user.email,
        firstName=user.first_name,
        lastName=user.last_name,
        isActive=user.is_active,
        isVerified=user.is_verified,
        roles=profile.roles,
        permissions=profile.permissions,
        lastLoginAt=user.last_login_at,
        createdAt=user.created_at,
    )


def _token_response(result: AuthResult) -> dict:
    return TokenResponse(
        accessToken=result.access_token.token,
        refreshToken=result.refresh_token,
        tokenType=result.token_type,
        expiresIn=result.access_token.expires_in,
        sessionId=result.session.session_id,
    ).model_dump(mode="json", exclude_none=True)


def _role_response(role: Role, permissions=None, user_count: int = 0) -> RoleResponse:
    return RoleResponse(
        name=role.name,
        displayName=role.display_name,
        description=role.description,
        isSystemRole=role.is_system_role,
        permissions=list(permissions if permissions is not None else role.permissions),
        userCount=user_count,
    )


def _audit_response(entry: AuditLogEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        action=entry.action,
        success=entry.success,
        userId=entry.user_id,
        sessionId=entry.session_id,
        resource=entry.resource,
        resourceId=entry.resource_id,
        details=entry.details,
        errorMessage=entry.error_message,
        ipAddr=entry.ip_addr,
        createdAt=entry.created_at,
    )


# ----------------------------------------------------------------------
# auth
# ----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account with the default role.

    Raises:
        400: invalid email or weak password
        409: email already registered
        429: rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{client_ip(request)}",
        runtime.settings.register_rate_limit_per_minute,
    )
    profile = await runtime.sessions.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        metadata=request_metadata(request),
    )
    return Envelope(
        data={"user": _user_response(profile).model_dump(mode="json")},
        message="User registered successfully",
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: invalid credentials
        403: account disabled
        423: account locked
        429: rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
    )
    result = await runtime.sessions.login(
        body.email, body.password, metadata=request_metadata(request)
    )
    payload = LoginResponse(
        accessToken=result.access_token.token,
        refreshToken=result.refresh_token,
        tokenType=result.token_type,
        expiresIn=result.access_token.expires_in,
        sessionId=result.session.session_id,
        user=_user_response(
            UserProfile(user=result.user, roles=result.roles, permissions=result.permissions)
        ),
    )
    return Envelope(data=payload.model_dump(mode="json"), message="Login successful")


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
    )
    result = await runtime.sessions.refresh(
        body.refresh_token, metadata=request_metadata(request)
    )
    return Envelope(data=_token_response(result), message="Token refreshed successfully")


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    await runtime.sessions.logout(
        principal.session_id,
        user_id=principal.user_id,
        metadata=request_metadata(request),
    )
    return Envelope(message="Logged out successfully")


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    revoked = await runtime.sessions.logout_all(
        principal.user_id, metadata=request_metadata(request)
    )
    return Envelope(data={"sessionsRevoked": revoked}, message="All sessions logged out")


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    profile = await runtime.sessions.me(principal.user_id)
    return Envelope(data={"user": _user_response(profile).model_dump(mode="json")})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: AuthContext = Depends(get_current_user),
):
    """Change the caller's password and sign out every session.

    Raises:
        400: wrong current password or weak new password
    """
    runtime = get_runtime()
    revoked = await runtime.sessions.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        metadata=request_metadata(request),
    )
    return Envelope(
        data={"sessionsRevoked": revoked},
        message="Password changed successfully. Please log in again.",
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    sessions = await runtime.sessions.list_sessions(principal.user_id)
    data = [
        SessionResponse(
            sessionId=session.session_id,
            ipAddr=session.ip_addr,
            userAgent=session.user_agent,
            createdAt=session.created_at,
            lastActivity=session.last_activity,
            expiresAt=session.expires_at,
            current=session.session_id == principal.session_id,
        ).model_dump(mode="json")
        for session in sessions
    ]
    return Envelope(data={"sessions": data})


@router.get("/auth/jwks", tags=["auth"])
async def jwks():
    runtime = get_runtime()
    return await asyncio.to_thread(runtime.keys.jwks)


@router.post("/auth/assign-role", response_model=Envelope, tags=["auth"])
async def assign_role(
    body: AssignRoleRequest,
    request: Request,
    principal: AuthContext = Depends(require_role("admin")),
):
    runtime = get_runtime()
    assignment = await runtime.sessions.assign_role(
        _user_ref(body.user_id),
        body.role_name,
        assigned_by=principal.user_id,
        expires_at=body.expires_at,
        metadata=request_metadata(request),
    )
    return Envelope(
        data={
            "userId": body.user_id,
            "roleName": body.role_name,
            "assignedAt": assignment.assigned_at.isoformat(),
            "expiresAt": assignment.expires_at.isoformat() if assignment.expires_at else None,
        },
        message="Role assigned successfully",
    )


# ----------------------------------------------------------------------
# users and roles
# ----------------------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    role: Optional[str] = Query(None, max_length=64),
    principal: AuthContext = Depends(require_permission("users.read")),
):
    runtime = get_runtime()
    result = await runtime.sessions.list_users(page=page, limit=limit, search=search, role=role)
    payload = UserListResponse(
        users=[_user_response(profile) for profile in result.users],
        pagination=Pagination(
            page=result.page, limit=result.limit, total=result.total, pages=result.pages
        ),
    )
    return Envelope(data=payload.model_dump(mode="json"))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(
        require_ownership("user_id", "params", override_roles=("admin", "manager"))
    ),
):
    runtime = get_runtime()
    profile = await runtime.sessions.get_user_profile(_user_ref(user_id))
    return Envelope(data={"user": _user_response(profile).model_dump(mode="json")})


@router.post("/users/{user_id}/unlock", response_model=Envelope, tags=["users"])
async def unlock_user(
    request: Request,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_role("admin")),
):
    runtime = get_runtime()
    user = await runtime.sessions.unlock_account(
        _user_ref(user_id),
        unlocked_by=principal.user_id,
        metadata=request_metadata(request),
    )
    return Envelope(data={"userId": user.uuid}, message="Account unlocked")


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    roles = await runtime.sessions.list_roles()
    data = [_role_response(role, user_count=count).model_dump(mode="json") for role, count in roles]
    return Envelope(data={"roles": data})


@router.get("/roles/{name}", response_model=Envelope, tags=["roles"])
async def get_role(
    name: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    details = await runtime.sessions.get_role(name)
    role = _role_response(details.role, details.permissions, details.user_count)
    return Envelope(data={"role": role.model_dump(mode="json")})


# ----------------------------------------------------------------------
# administration
# ----------------------------------------------------------------------


@router.get("/audit", response_model=Envelope, tags=["admin"])
async def list_audit(
    user_id: Optional[str] = Query(None, alias="userId", max_length=64),
    action: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(require_permission("system.admin")),
):
    runtime = get_runtime()
    entries = await runtime.sessions.list_audit(
        user_ref=_user_ref(user_id) if user_id else None,
        action=action,
        limit=limit,
        offset=offset,
    )
    return Envelope(
        data={"entries": [_audit_response(entry).model_dump(mode="json") for entry in entries]}
    )


@router.post("/admin/keys/rotate", response_model=Envelope, tags=["admin"])
async def rotate_signing_key(
    request: Request,
    principal: AuthContext = Depends(require_permission("system.admin")),
):
    runtime = get_runtime()
    pair = await runtime.sessions.rotate_signing_key(
        rotated_by=principal.user_id, metadata=request_metadata(request)
    )
    payload = KeyRotationResponse(
        keyId=pair.key_id, algorithm=pair.algorithm, createdAt=pair.created_at
    )
    return Envelope(data=payload.model_dump(mode="json"), message="Signing key rotated")
