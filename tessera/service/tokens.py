from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence, Tuple

import jwt

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.errors import (
    InvalidTokenError,
    SessionRevokedError,
    SigningUnavailableError,
    TokenExpiredError,
)
from tessera.service.keys import KeyManager
from tessera.service.rotation import NullRotationManager, RotationManager
from tessera.storage.errors import StoreUnavailable
from tessera.storage.models import Session, User, utcnow

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 64
_REQUIRED_CLAIMS = ["sub", "jti", "iat", "exp", "iss", "aud"]


@dataclass(frozen=True)
class IssuedAccessToken:
    token: str
    jti: str
    key_id: str
    issued_at: datetime
    expires_at: datetime

    @property
    def expires_in(self) -> int:
        return max(0, int((self.expires_at - self.issued_at).total_seconds()))


@dataclass(frozen=True)
class AccessTokenClaims:
    subject: str
    jti: str
    issued_at: datetime
    expires_at: datetime
    email: str = ""
    name: str = ""
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    user_id: Optional[int] = None


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class TokenService:
    """Issues and verifies access tokens and mints opaque refresh tokens.

    Access tokens are RS-signed JWTs carrying a ``kid`` header so any key
    still inside its verification window can check them. A token is only
    accepted while its ``jti`` is the current identity of an active session
    belonging to an active user.
    """

    def __init__(
        self,
        keys: KeyManager,
        store: Any,
        *,
        master_secret: str,
        issuer: str,
        audience: str,
        access_ttl_minutes: int = 15,
        refresh_ttl_minutes: int = 7 * 24 * 60,
        leeway_seconds: int = 5,
        rotation: Optional[RotationManager] = None,
    ) -> None:
        self.keys = keys
        self.store = store
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=refresh_ttl_minutes)
        self.leeway = leeway_seconds
        self.rotation: RotationManager = rotation or NullRotationManager()
        self._refresh_hmac_key = hashlib.sha256(
            b"tessera-refresh-token:" + master_secret.encode()
        ).digest()

    @classmethod
    def from_settings(
        cls,
        keys: KeyManager,
        store: Any,
        settings: Settings,
        *,
        rotation: Optional[RotationManager] = None,
    ) -> "TokenService":
        return cls(
            keys,
            store,
            master_secret=settings.master_secret or "",
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_minutes=settings.access_token_ttl_minutes,
            refresh_ttl_minutes=settings.refresh_token_ttl_minutes,
            leeway_seconds=settings.token_leeway_seconds,
            rotation=rotation,
        )

    # ------------------------------------------------------------------
    # access tokens
    # ------------------------------------------------------------------

    def issue_access_token(
        self,
        user: User,
        *,
        roles: Sequence[str],
        permissions: Sequence[str],
        session_id: Optional[str] = None,
        jti: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IssuedAccessToken:
        try:
            key = self.keys.get_active_key_pair()
        except (SigningUnavailableError, StoreUnavailable):
            raise
        except Exception as exc:
            logger.error("signing_key_load_failed", error=str(exc))
            raise SigningUnavailableError() from exc

        now = (now or utcnow()).replace(microsecond=0)
        expires_at = now + self.access_ttl
        jti = jti or str(uuid.uuid4())
        payload = {
            "sub": user.uuid,
            "email": user.email,
            "name": user.display_name,
            "roles": list(roles),
            "permissions": list(permissions),
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        if session_id:
            payload["sid"] = session_id
        token = jwt.encode(
            payload,
            key.private_key,
            algorithm=key.algorithm,
            headers={"kid": key.key_id},
        )
        return IssuedAccessToken(
            token=token, jti=jti, key_id=key.key_id, issued_at=now, expires_at=expires_at
        )

    def decode_access_token(self, token: str) -> AccessTokenClaims:
        """Check signature, issuer, audience and expiry; no session lookup."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError() from exc
        key_id = header.get("kid")
        algorithm = header.get("alg")
        if not key_id or algorithm != self.keys.algorithm:
            logger.warning("jwt_header_rejected", kid=key_id, alg=algorithm)
            raise InvalidTokenError()

        public_key = self.keys.get_verification_key(key_id)
        if public_key is None:
            logger.warning("jwt_unknown_key", kid=key_id)
            raise InvalidTokenError()

        try:
            payload = jwt.decode(
                token,
                public_key,
                algorithms=[self.keys.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except jwt.InvalidTokenError as exc:
            logger.warning("jwt_rejected", reason=type(exc).__name__)
            raise InvalidTokenError() from exc

        return AccessTokenClaims(
            subject=str(payload["sub"]),
            jti=str(payload["jti"]),
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
            email=payload.get("email", ""),
            name=payload.get("name", ""),
            roles=list(payload.get("roles") or []),
            permissions=list(payload.get("permissions") or []),
            session_id=payload.get("sid"),
        )

    def _session_state(self, jti: str) -> Tuple[Optional[Session], Optional[User]]:
        session = self.store.get_session_by_jti(jti)
        if session is None:
            return None, None
        return session, self.store.get_user(session.user_id)

    async def verify_access_token(self, token: str) -> AccessTokenClaims:
        # Key lookup by kid may hit the store
        claims = await asyncio.to_thread(self.decode_access_token, token)
        if claims.session_id and await self.rotation.is_session_revoked(claims.session_id):
            raise SessionRevokedError()

        session, user = await asyncio.to_thread(self._session_state, claims.jti)
        now = utcnow()
        if session is None or not session.is_live(now):
            raise SessionRevokedError()
        if user is None or not user.is_active or user.uuid != claims.subject:
            raise SessionRevokedError()
        return AccessTokenClaims(
            subject=claims.subject,
            jti=claims.jti,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
            email=claims.email,
            name=claims.name,
            roles=claims.roles,
            permissions=claims.permissions,
            session_id=session.session_id,
            user_id=user.id,
        )

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------

    def issue_refresh_token(self) -> Tuple[str, str]:
        token = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        return token, self.hash_refresh_token(token)

    def hash_refresh_token(self, token: str) -> str:
        return hmac.new(self._refresh_hmac_key, token.encode("utf-8"), hashlib.sha256).hexdigest()

    def refresh_expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + self.refresh_ttl
