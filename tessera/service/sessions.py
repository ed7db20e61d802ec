from __future__ import annotations

import asyncio
import itertools
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.audit import AuditSink
from tessera.service.credentials import CredentialStore
from tessera.service.errors import (
    AccountDisabledError,
    AccountLockedError,
    EmailExistsError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidRefreshTokenError,
    RefreshTokenReplayError,
    RoleNotFoundError,
    ServiceError,
    UserNotFoundError,
    ValidationError,
    WeakPasswordError,
)
from tessera.service.keys import KeyManager, KeyPair
from tessera.service.lockout import LockoutPolicy
from tessera.service.rotation import NullRotationManager, RotationManager
from tessera.service.tokens import IssuedAccessToken, TokenService
from tessera.storage.common import expand_permission_patterns, normalize_email
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import (
    AuditLogEntry,
    RefreshToken,
    Role,
    Session,
    User,
    UserRoleAssignment,
)

logger = get_logger(__name__)

UserRef = Union[int, str]

# Expired refresh tokens are kept this long so late replays still hit a row
EXPIRED_TOKEN_RETENTION = timedelta(days=1)


@dataclass(frozen=True)
class RequestMetadata:
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class UserProfile:
    user: User
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


@dataclass
class AuthResult:
    user: User
    session: Session
    access_token: IssuedAccessToken
    roles: List[str]
    permissions: List[str]
    # Only set on login, or on refresh when rotation-on-refresh is enabled
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"


@dataclass
class UserPage:
    users: List[UserProfile]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class RoleDetails:
    role: Role
    permissions: List[str]
    user_count: int


@dataclass
class _Revocations:
    """Rows deactivated by a committed transaction, mirrored into the rotation cache."""

    sessions: List[Session] = field(default_factory=list)
    tokens: List[RefreshToken] = field(default_factory=list)


class SessionEngine:
    """Registration, login, refresh, logout and password change.

    Each operation's state changes run in one store transaction inside a
    worker thread, so the transaction never spans an ``await``. Failure
    bookkeeping (lockout counters, audit entries) is committed before the
    typed error is raised; unexpected errors roll the whole unit back.
    Rotation-cache updates happen only after commit.
    """

    def __init__(
        self,
        store: Any,
        *,
        credentials: CredentialStore,
        keys: KeyManager,
        lockout: LockoutPolicy,
        tokens: TokenService,
        audit: AuditSink,
        rotation: Optional[RotationManager] = None,
        default_role: str = "user",
        session_ttl_minutes: int = 7 * 24 * 60,
        rotate_refresh_tokens: bool = False,
        revoke_session_on_replay: bool = True,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.keys = keys
        self.lockout = lockout
        self.tokens = tokens
        self.audit = audit
        self.rotation: RotationManager = rotation or NullRotationManager()
        self.default_role = default_role
        self.session_ttl_minutes = session_ttl_minutes
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.revoke_session_on_replay = revoke_session_on_replay

    @classmethod
    def from_settings(
        cls,
        store: Any,
        settings: Settings,
        *,
        credentials: CredentialStore,
        keys: KeyManager,
        lockout: LockoutPolicy,
        tokens: TokenService,
        audit: AuditSink,
        rotation: Optional[RotationManager] = None,
    ) -> "SessionEngine":
        return cls(
            store,
            credentials=credentials,
            keys=keys,
            lockout=lockout,
            tokens=tokens,
            audit=audit,
            rotation=rotation,
            default_role=settings.default_role,
            session_ttl_minutes=settings.refresh_token_ttl_minutes,
            rotate_refresh_tokens=settings.rotate_refresh_tokens,
            revoke_session_on_replay=settings.revoke_session_on_refresh_replay,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _authorization_for(self, user_id: int, now: datetime) -> Tuple[List[str], List[str]]:
        roles = self.store.get_user_roles(user_id, now)
        patterns = itertools.chain.from_iterable(role.permissions for role in roles)
        permissions = expand_permission_patterns(patterns, self.store.list_permissions())
        return [role.name for role in roles], permissions

    def _profile(self, user: User, now: datetime) -> UserProfile:
        roles, permissions = self._authorization_for(user.id, now)
        return UserProfile(user=user, roles=roles, permissions=permissions)

    def _resolve_user(self, user_ref: UserRef) -> User:
        if isinstance(user_ref, int):
            user = self.store.get_user(user_ref)
        else:
            user = self.store.get_user_by_uuid(user_ref)
        if user is None:
            raise UserNotFoundError()
        return user

    async def _propagate(self, revocations: _Revocations) -> None:
        for session in revocations.sessions:
            await self.rotation.revoke_session(session.session_id, session.expires_at)
        for token in revocations.tokens:
            await self.rotation.revoke_refresh_token(token.token_hash, token.expires_at)

    def _audit_meta(self, metadata: Optional[RequestMetadata]) -> Dict[str, Optional[str]]:
        metadata = metadata or RequestMetadata()
        return {"ip_addr": metadata.ip_addr, "user_agent": metadata.user_agent}

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        role: Optional[str] = None,
        metadata: Optional[RequestMetadata] = None,
    ) -> UserProfile:
        strength = self.credentials.validate_strength(password)
        if not strength.is_valid:
            raise WeakPasswordError(errors=strength.errors, suggestions=strength.suggestions)
        password_hash, algo = await asyncio.to_thread(self.credentials.hash, password)
        return await asyncio.to_thread(
            self._register_tx,
            email,
            password_hash,
            algo,
            first_name,
            last_name,
            role or self.default_role,
            metadata,
        )

    def _register_tx(
        self,
        email: str,
        password_hash: str,
        algo: str,
        first_name: str,
        last_name: str,
        role_name: str,
        metadata: Optional[RequestMetadata],
    ) -> UserProfile:
        now = self._now()
        with self.store.transaction():
            role = self.store.get_role(role_name)
            if role is None:
                raise RoleNotFoundError(role_name)
            try:
                user = self.store.create_user(
                    email,
                    password_hash,
                    algo,
                    first_name=first_name,
                    last_name=last_name,
                )
            except ConstraintViolation as exc:
                raise EmailExistsError() from exc
            self.store.assign_role(user.id, role.id)
            self.audit.record(
                "user.register",
                user_id=user.id,
                resource="user",
                resource_id=user.uuid,
                details={"role": role.name},
                **self._audit_meta(metadata),
            )
            profile = self._profile(user, now)
        logger.info("user_registered", user_id=user.id, role=role.name)
        return profile

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------

    async def login(
        self, email: str, password: str, metadata: Optional[RequestMetadata] = None
    ) -> AuthResult:
        return await asyncio.to_thread(self._login_tx, email, password, metadata)

    def _login_failed(
        self,
        user: Optional[User],
        reason: str,
        metadata: Optional[RequestMetadata],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = {"reason": reason, **(details or {})}
        self.audit.record(
            "user.login",
            success=False,
            user_id=user.id if user else None,
            resource="user",
            resource_id=user.uuid if user else None,
            details=payload,
            error_message=reason,
            **self._audit_meta(metadata),
        )
        logger.warning("login_failed", user_id=user.id if user else None, reason=reason)

    def _login_tx(
        self, email: str, password: str, metadata: Optional[RequestMetadata]
    ) -> AuthResult:
        now = self._now()
        user = self.store.get_user_by_email(email)
        if user is None:
            # Same hashing cost as a real check so response time does not reveal the account
            self.credentials.dummy_verify(password)
            self._login_failed(None, "unknown_account", metadata, {"email": normalize_email(email)})
            raise InvalidCredentialsError()

        if self.lockout.is_locked(user, now):
            self._login_failed(
                user,
                "account_locked",
                metadata,
                {"locked_until": user.locked_until.isoformat()},
            )
            raise AccountLockedError(user.locked_until)

        if not self.credentials.verify(password, user.password_hash, user.password_algo):
            with self.store.transaction():
                locked_until = self.lockout.record_failure(user.id)
                self._login_failed(
                    user,
                    "invalid_password",
                    metadata,
                    {"locked_until": locked_until.isoformat() if locked_until else None},
                )
            raise InvalidCredentialsError()

        if not user.is_active:
            self._login_failed(user, "account_disabled", metadata)
            raise AccountDisabledError()

        new_hash: Optional[Tuple[str, str]] = None
        if self.credentials.needs_rehash(user.password_hash, user.password_algo):
            new_hash = self.credentials.hash(password)

        with self.store.transaction():
            self.lockout.reset(user.id)
            self.store.record_login_success(user.id, now)
            if new_hash is not None:
                self.store.update_password(user.id, *new_hash)
                logger.info(
                    "password_rehashed", user_id=user.id, previous_algo=user.password_algo
                )
            result = self._open_session(user, metadata, now)
            self.audit.record(
                "user.login",
                user_id=user.id,
                session_id=result.session.session_id,
                resource="session",
                resource_id=result.session.session_id,
                details={"rehashed": new_hash is not None},
                **self._audit_meta(metadata),
            )
        logger.info("login_succeeded", user_id=user.id, session_id=result.session.session_id)
        return result

    def _open_session(
        self, user: User, metadata: Optional[RequestMetadata], now: datetime
    ) -> AuthResult:
        metadata = metadata or RequestMetadata()
        roles, permissions = self._authorization_for(user.id, now)
        session = Session.new(
            user.id,
            str(uuid.uuid4()),
            self.session_ttl_minutes,
            ip_addr=metadata.ip_addr,
            user_agent=metadata.user_agent,
            now=now,
        )
        access = self.tokens.issue_access_token(
            user,
            roles=roles,
            permissions=permissions,
            session_id=session.session_id,
            jti=session.jwt_jti,
            now=now,
        )
        self.store.create_session(session)
        refresh_token, refresh_hash = self.tokens.issue_refresh_token()
        self.store.create_refresh_token(
            refresh_hash,
            user.id,
            session.session_id,
            min(self.tokens.refresh_expiry(now), session.expires_at),
        )
        return AuthResult(
            user=user,
            session=session,
            access_token=access,
            roles=roles,
            permissions=permissions,
            refresh_token=refresh_token,
        )

    # ------------------------------------------------------------------
    # refresh
    # ------------------------------------------------------------------

    async def refresh(
        self, refresh_token: str, metadata: Optional[RequestMetadata] = None
    ) -> AuthResult:
        if not refresh_token:
            raise InvalidRefreshTokenError()
        token_hash = self.tokens.hash_refresh_token(refresh_token)
        if await self.rotation.is_refresh_token_revoked(token_hash):
            await asyncio.to_thread(
                self._refresh_failed, None, "revoked_cached", metadata
            )
            raise InvalidRefreshTokenError()

        result, failure, revocations = await asyncio.to_thread(
            self._refresh_tx, token_hash, metadata
        )
        await self._propagate(revocations)
        if failure is not None:
            raise failure
        return result

    def _refresh_failed(
        self,
        token: Optional[RefreshToken],
        reason: str,
        metadata: Optional[RequestMetadata],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.audit.record(
            "token.refresh",
            success=False,
            user_id=token.user_id if token else None,
            session_id=token.session_id if token else None,
            resource="session",
            resource_id=token.session_id if token else None,
            details={"reason": reason, **(details or {})},
            error_message=reason,
            **self._audit_meta(metadata),
        )

    def _refresh_tx(
        self, token_hash: str, metadata: Optional[RequestMetadata]
    ) -> Tuple[Optional[AuthResult], Optional[ServiceError], _Revocations]:
        now = self._now()
        revocations = _Revocations()
        with self.store.transaction():
            token = self.store.redeem_refresh_token(token_hash, now)
            if token is None:
                existing = self.store.get_refresh_token(token_hash)
                if existing is not None and existing.expires_at > now and (
                    existing.used_at is not None or existing.is_revoked
                ):
                    return None, self._handle_replay(existing, metadata, now, revocations), revocations
                reason = "expired" if existing is not None else "not_found"
                self._refresh_failed(existing, reason, metadata)
                return None, InvalidRefreshTokenError(), revocations

            session = self.store.get_session(token.session_id)
            user = self.store.get_user(token.user_id)
            if session is None or not session.is_live(now) or user is None or not user.is_active:
                self._refresh_failed(token, "session_inactive", metadata)
                return None, InvalidRefreshTokenError(), revocations

            roles, permissions = self._authorization_for(user.id, now)
            access = self.tokens.issue_access_token(
                user,
                roles=roles,
                permissions=permissions,
                session_id=session.session_id,
                now=now,
            )
            self.store.update_session_access(
                session.session_id, jwt_jti=access.jti, last_activity=now
            )
            session = replace(session, jwt_jti=access.jti, last_activity=now)

            new_refresh: Optional[str] = None
            if self.rotate_refresh_tokens:
                new_refresh, new_hash = self.tokens.issue_refresh_token()
                self.store.create_refresh_token(
                    new_hash,
                    user.id,
                    session.session_id,
                    min(self.tokens.refresh_expiry(now), session.expires_at),
                )
            self.audit.record(
                "token.refresh",
                user_id=user.id,
                session_id=session.session_id,
                resource="session",
                resource_id=session.session_id,
                details={"rotated": new_refresh is not None},
                **self._audit_meta(metadata),
            )
        result = AuthResult(
            user=user,
            session=session,
            access_token=access,
            roles=roles,
            permissions=permissions,
            refresh_token=new_refresh,
        )
        return result, None, revocations

    def _handle_replay(
        self,
        token: RefreshToken,
        metadata: Optional[RequestMetadata],
        now: datetime,
        revocations: _Revocations,
    ) -> RefreshTokenReplayError:
        session_revoked = False
        if self.revoke_session_on_replay:
            session = self.store.deactivate_session(
                token.session_id, reason="refresh_token_replay", at=now
            )
            if session is not None:
                session_revoked = True
                revocations.sessions.append(session)
            revocations.tokens.extend(
                self.store.revoke_session_refresh_tokens(
                    token.session_id, reason="refresh_token_replay", at=now
                )
            )
        self.audit.record(
            "token.replay_detected",
            success=False,
            user_id=token.user_id,
            session_id=token.session_id,
            resource="session",
            resource_id=token.session_id,
            details={
                "session_revoked": session_revoked,
                "token_used_at": token.used_at.isoformat() if token.used_at else None,
                "token_revoked": token.is_revoked,
            },
            error_message="refresh token presented after use or revocation",
            **self._audit_meta(metadata),
        )
        logger.warning(
            "refresh_token_replay_detected",
            user_id=token.user_id,
            session_id=token.session_id,
            session_revoked=session_revoked,
        )
        return RefreshTokenReplayError()

    # ------------------------------------------------------------------
    # logout
    # ------------------------------------------------------------------

    async def logout(
        self,
        session_id: str,
        *,
        user_id: Optional[int] = None,
        metadata: Optional[RequestMetadata] = None,
    ) -> bool:
        revocations = await asyncio.to_thread(self._logout_tx, session_id, user_id, metadata)
        await self._propagate(revocations)
        return bool(revocations.sessions)

    def _logout_tx(
        self, session_id: str, user_id: Optional[int], metadata: Optional[RequestMetadata]
    ) -> _Revocations:
        now = self._now()
        with self.store.transaction():
            session = self.store.deactivate_session(session_id, reason="logout", at=now)
            tokens = self.store.revoke_session_refresh_tokens(
                session_id, reason="logout", at=now, revoked_by=user_id
            )
            self.audit.record(
                "user.logout",
                user_id=user_id if user_id is not None else (session.user_id if session else None),
                session_id=session_id,
                resource="session",
                resource_id=session_id,
                details={"refresh_tokens_revoked": len(tokens)},
                **self._audit_meta(metadata),
            )
        return _Revocations(sessions=[session] if session else [], tokens=tokens)

    async def logout_all(
        self,
        user_id: int,
        *,
        except_session_id: Optional[str] = None,
        metadata: Optional[RequestMetadata] = None,
    ) -> int:
        revocations = await asyncio.to_thread(
            self._logout_all_tx, user_id, except_session_id, metadata
        )
        await self._propagate(revocations)
        return len(revocations.sessions)

    def _revoke_everything(
        self, user_id: int, reason: str, now: datetime, except_session_id: Optional[str] = None
    ) -> _Revocations:
        sessions = self.store.deactivate_user_sessions(
            user_id, reason=reason, at=now, except_session_id=except_session_id
        )
        tokens: List[RefreshToken] = []
        if except_session_id is None:
            tokens = self.store.revoke_user_refresh_tokens(
                user_id, reason=reason, at=now, revoked_by=user_id
            )
        else:
            for session in sessions:
                tokens.extend(
                    self.store.revoke_session_refresh_tokens(
                        session.session_id, reason=reason, at=now, revoked_by=user_id
                    )
                )
        return _Revocations(sessions=sessions, tokens=tokens)

    def _logout_all_tx(
        self,
        user_id: int,
        except_session_id: Optional[str],
        metadata: Optional[RequestMetadata],
    ) -> _Revocations:
        now = self._now()
        with self.store.transaction():
            revocations = self._revoke_everything(user_id, "logout_all", now, except_session_id)
            self.audit.record(
                "user.logout_all",
                user_id=user_id,
                resource="user",
                details={
                    "sessions_revoked": len(revocations.sessions),
                    "kept_session_id": except_session_id,
                },
                **self._audit_meta(metadata),
            )
        return revocations

    # ------------------------------------------------------------------
    # password change
    # ------------------------------------------------------------------

    async def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        metadata: Optional[RequestMetadata] = None,
    ) -> int:
        """Change the password and end every session of the user.

        Returns the number of sessions revoked.
        """
        user = await asyncio.to_thread(self._resolve_user, user_id)
        verified = await asyncio.to_thread(
            self.credentials.verify, current_password, user.password_hash, user.password_algo
        )
        if not verified:
            await asyncio.to_thread(
                self.audit.record,
                "user.password_change",
                success=False,
                user_id=user.id,
                resource="user",
                resource_id=user.uuid,
                error_message="invalid_current_password",
                **self._audit_meta(metadata),
            )
            raise InvalidCurrentPasswordError()

        strength = self.credentials.validate_strength(new_password)
        if not strength.is_valid:
            raise WeakPasswordError(errors=strength.errors, suggestions=strength.suggestions)
        if new_password == current_password:
            raise WeakPasswordError(
                "New password must be different from the current password",
                errors=["New password must be different from the current password"],
            )

        password_hash, algo = await asyncio.to_thread(self.credentials.hash, new_password)
        revocations = await asyncio.to_thread(
            self._change_password_tx, user, password_hash, algo, metadata
        )
        await self._propagate(revocations)
        return len(revocations.sessions)

    def _change_password_tx(
        self,
        user: User,
        password_hash: str,
        algo: str,
        metadata: Optional[RequestMetadata],
    ) -> _Revocations:
        now = self._now()
        with self.store.transaction():
            self.store.update_password(user.id, password_hash, algo)
            revocations = self._revoke_everything(user.id, "password_changed", now)
            self.audit.record(
                "user.password_change",
                user_id=user.id,
                resource="user",
                resource_id=user.uuid,
                details={"sessions_revoked": len(revocations.sessions)},
                **self._audit_meta(metadata),
            )
        logger.info(
            "password_changed", user_id=user.id, sessions_revoked=len(revocations.sessions)
        )
        return revocations

    # ------------------------------------------------------------------
    # roles
    # ------------------------------------------------------------------

    async def assign_role(
        self,
        user_ref: UserRef,
        role_name: str,
        assigned_by: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[RequestMetadata] = None,
    ) -> UserRoleAssignment:
        if expires_at is not None:
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at <= self._now():
                raise ValidationError(
                    "expires_at must be in the future", detail={"field": "expires_at"}
                )
        return await asyncio.to_thread(
            self._assign_role_tx, user_ref, role_name, assigned_by, expires_at, metadata
        )

    def _assign_role_tx(
        self,
        user_ref: UserRef,
        role_name: str,
        assigned_by: Optional[int],
        expires_at: Optional[datetime],
        metadata: Optional[RequestMetadata],
    ) -> UserRoleAssignment:
        with self.store.transaction():
            user = self._resolve_user(user_ref)
            role = self.store.get_role(role_name)
            if role is None:
                raise RoleNotFoundError(role_name)
            assignment = self.store.assign_role(
                user.id, role.id, assigned_by=assigned_by, expires_at=expires_at
            )
            self.audit.record(
                "role.assigned",
                user_id=assigned_by,
                resource="user",
                resource_id=user.uuid,
                details={
                    "role": role.name,
                    "target_user_id": user.id,
                    "expires_at": expires_at.isoformat() if expires_at else None,
                },
                **self._audit_meta(metadata),
            )
        logger.info("role_assigned", user_id=user.id, role=role.name, assigned_by=assigned_by)
        return assignment

    async def list_roles(self) -> List[Tuple[Role, int]]:
        return await asyncio.to_thread(self.store.list_roles, self._now())

    async def get_role(self, name: str) -> RoleDetails:
        def _load() -> RoleDetails:
            role = self.store.get_role(name)
            if role is None:
                raise RoleNotFoundError(name)
            permissions = expand_permission_patterns(role.permissions, self.store.list_permissions())
            return RoleDetails(
                role=role,
                permissions=permissions,
                user_count=self.store.count_role_members(role.id, self._now()),
            )

        return await asyncio.to_thread(_load)

    # ------------------------------------------------------------------
    # directory
    # ------------------------------------------------------------------

    async def me(self, user_id: int) -> UserProfile:
        def _load() -> UserProfile:
            return self._profile(self._resolve_user(user_id), self._now())

        return await asyncio.to_thread(_load)

    async def get_user_profile(self, user_ref: UserRef) -> UserProfile:
        def _load() -> UserProfile:
            return self._profile(self._resolve_user(user_ref), self._now())

        return await asyncio.to_thread(_load)

    async def list_users(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        role: Optional[str] = None,
    ) -> UserPage:
        page = max(1, page)
        limit = min(max(1, limit), 100)

        def _load() -> UserPage:
            now = self._now()
            users, total = self.store.list_users(
                limit=limit,
                offset=(page - 1) * limit,
                search=search or None,
                role=role or None,
                now=now,
            )
            return UserPage(
                users=[self._profile(user, now) for user in users],
                total=total,
                page=page,
                limit=limit,
            )

        return await asyncio.to_thread(_load)

    async def list_sessions(self, user_id: int) -> List[Session]:
        return await asyncio.to_thread(
            lambda: self.store.list_user_sessions(user_id, now=self._now())
        )

    # ------------------------------------------------------------------
    # administration
    # ------------------------------------------------------------------

    async def unlock_account(
        self,
        user_ref: UserRef,
        *,
        unlocked_by: Optional[int] = None,
        metadata: Optional[RequestMetadata] = None,
    ) -> User:
        def _unlock() -> User:
            with self.store.transaction():
                user = self._resolve_user(user_ref)
                self.lockout.unlock(user.id)
                self.audit.record(
                    "account.unlocked",
                    user_id=unlocked_by,
                    resource="user",
                    resource_id=user.uuid,
                    details={
                        "target_user_id": user.id,
                        "previous_failed_attempts": user.failed_login_attempts,
                    },
                    **self._audit_meta(metadata),
                )
            return replace(user, failed_login_attempts=0, locked_until=None)

        return await asyncio.to_thread(_unlock)

    async def rotate_signing_key(
        self,
        *,
        rotated_by: Optional[int] = None,
        reason: str = "manual",
        metadata: Optional[RequestMetadata] = None,
    ) -> KeyPair:
        previous = await asyncio.to_thread(self.keys.get_active_key_pair)
        pair = await asyncio.to_thread(self.keys.rotate)
        await asyncio.to_thread(
            self.audit.record,
            "key.rotated",
            user_id=rotated_by,
            resource="signing_key",
            resource_id=pair.key_id,
            details={"previous_key_id": previous.key_id, "reason": reason},
            **self._audit_meta(metadata),
        )
        return pair

    async def rotate_signing_key_if_due(self, max_age: timedelta) -> Optional[KeyPair]:
        due = await asyncio.to_thread(self.keys.rotation_due, max_age)
        if not due:
            return None
        return await self.rotate_signing_key(reason="scheduled")

    async def list_audit(
        self,
        *,
        user_ref: Optional[UserRef] = None,
        action: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        def _load() -> List[AuditLogEntry]:
            user_id = self._resolve_user(user_ref).id if user_ref is not None else None
            return self.audit.query(user_id=user_id, action=action, limit=limit, offset=offset)

        return await asyncio.to_thread(_load)

    async def cleanup_expired(self) -> Dict[str, int]:
        now = self._now()
        expired = await asyncio.to_thread(self.store.expire_sessions, now)
        purged = await asyncio.to_thread(
            self.store.purge_refresh_tokens, now - EXPIRED_TOKEN_RETENTION
        )
        swept = await self.rotation.sweep()
        if expired or purged or swept:
            logger.info(
                "auth_cleanup_completed",
                sessions_expired=expired,
                refresh_tokens_purged=purged,
                cache_entries_swept=swept,
            )
        return {
            "sessions_expired": expired,
            "refresh_tokens_purged": purged,
            "cache_entries_swept": swept,
        }
