from __future__ import annotations

import json
from typing import Any, Callable, Iterable, Optional

from fastapi import Depends, Header, Request

from tessera.logging import get_logger
from tessera.service.errors import ValidationError
from tessera.service.guard import AuthContext
from tessera.service.runtime import get_runtime
from tessera.service.sessions import RequestMetadata

logger = get_logger(__name__)

OWNERSHIP_SOURCES = ("params", "query", "body")


def request_metadata(request: Request) -> RequestMetadata:
    return RequestMetadata(
        ip_addr=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.guard.authenticate(authorization)


def require_role(*roles: str) -> Callable[..., Any]:
    async def _dependency(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
        get_runtime().guard.require_role(principal, roles)
        return principal

    return _dependency


def require_permission(*permissions: str) -> Callable[..., Any]:
    async def _dependency(principal: AuthContext = Depends(get_current_user)) -> AuthContext:
        get_runtime().guard.require_permission(principal, permissions)
        return principal

    return _dependency


async def _read_body_field(request: Request, field: str) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ValidationError("request body is not valid JSON") from exc
    if not isinstance(payload, dict):
        return None
    return payload.get(field)


def require_ownership(
    field: str,
    source: str = "params",
    override_roles: Iterable[str] = ("admin",),
) -> Callable[..., Any]:
    """Dependency that lets a caller through only for their own resource.

    ``source`` selects where ``field`` is read from: path parameters,
    query string or JSON body.
    """
    if source not in OWNERSHIP_SOURCES:
        raise ValueError(f"source must be one of {', '.join(OWNERSHIP_SOURCES)}")
    overrides = tuple(override_roles)

    async def _dependency(
        request: Request, principal: AuthContext = Depends(get_current_user)
    ) -> AuthContext:
        if source == "params":
            value = request.path_params.get(field)
        elif source == "query":
            value = request.query_params.get(field)
        else:
            value = await _read_body_field(request, field)
        get_runtime().guard.check_ownership(
            principal,
            value,
            field_name=field,
            source=source,
            override_roles=overrides,
        )
        return principal

    return _dependency
