from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from tessera.logging import get_logger
from tessera.service.errors import (
    InsufficientPermissionError,
    InsufficientRoleError,
    InvalidTokenFormatError,
    MissingResourceIdError,
    NoTokenError,
    NotResourceOwnerError,
    ServiceError,
)
from tessera.service.tokens import TokenService
from tessera.storage.errors import StoreUnavailable

logger = get_logger(__name__)

BEARER_PREFIX = "bearer "


@dataclass
class AuthContext:
    """Identity attached to a request once its bearer token checks out."""

    user_id: int
    subject: str
    session_id: str
    jti: str
    email: str = ""
    name: str = ""
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


def extract_bearer(header: Optional[str]) -> str:
    if header is None or not header.strip():
        raise NoTokenError()
    if not header[: len(BEARER_PREFIX)].lower() == BEARER_PREFIX:
        raise InvalidTokenFormatError()
    token = header[len(BEARER_PREFIX):].strip()
    if not token:
        raise InvalidTokenFormatError()
    return token


class AuthorizationGuard:
    """Authenticates bearer tokens and enforces role, permission and ownership checks.

    Role names are compared case-sensitively against the roles embedded in
    the token; permissions likewise come from the token, so a change in
    grants takes effect on the next refresh.
    """

    def __init__(self, tokens: TokenService) -> None:
        self.tokens = tokens

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        claims = await self.tokens.verify_access_token(token)
        return AuthContext(
            user_id=claims.user_id,
            subject=claims.subject,
            session_id=claims.session_id,
            jti=claims.jti,
            email=claims.email,
            name=claims.name,
            roles=list(claims.roles),
            permissions=list(claims.permissions),
        )

    async def try_authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        if not authorization:
            return None
        try:
            return await self.authenticate(authorization)
        except ServiceError as exc:
            logger.debug("optional_auth_rejected", error=exc.error_code)
            return None
        except StoreUnavailable as exc:
            logger.warning("optional_auth_store_unavailable", error=exc.message)
            return None

    def require_role(self, ctx: AuthContext, roles: Iterable[str]) -> None:
        required = list(roles)
        if not set(required) & set(ctx.roles):
            logger.warning(
                "authorization_denied", user_id=ctx.user_id, required_roles=required, roles=ctx.roles
            )
            raise InsufficientRoleError(required)

    def require_permission(self, ctx: AuthContext, permissions: Iterable[str]) -> None:
        required = list(permissions)
        if not set(required) & set(ctx.permissions):
            logger.warning(
                "authorization_denied",
                user_id=ctx.user_id,
                required_permissions=required,
            )
            raise InsufficientPermissionError(required)

    def check_ownership(
        self,
        ctx: AuthContext,
        owner_ref: Any,
        *,
        field_name: str = "userId",
        source: str = "params",
        override_roles: Iterable[str] = ("admin",),
    ) -> None:
        """Allow access when ``owner_ref`` names the caller or the caller holds an override role.

        ``owner_ref`` may be the caller's numeric id or public UUID.
        """
        if owner_ref is None or (isinstance(owner_ref, str) and not owner_ref.strip()):
            raise MissingResourceIdError(field_name, source)
        if set(override_roles) & set(ctx.roles):
            return
        if str(owner_ref) in (str(ctx.user_id), ctx.subject):
            return
        logger.warning("ownership_denied", user_id=ctx.user_id, resource_owner=str(owner_ref))
        raise NotResourceOwnerError()
