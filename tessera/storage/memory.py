from __future__ import annotations

import copy
import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Type, TypeVar

from tessera.logging import get_logger
from tessera.storage.common import (
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLES,
    normalize_email,
    permission_name,
    search_matches,
)
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import (
    AuditLogEntry,
    Permission,
    RefreshToken,
    Role,
    Session,
    SigningKeyRecord,
    User,
    UserRoleAssignment,
    utcnow,
)

T = TypeVar("T")

# Mutable tables captured by transaction snapshots and persisted to disk
_TABLES = (
    "users",
    "permissions",
    "roles",
    "assignments",
    "sessions",
    "refresh_tokens",
    "signing_keys",
    "audit_log",
    "_seq",
)


def _encode(obj: Any) -> Dict[str, Any]:
    data = asdict(obj)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


def _decode(cls: Type[T], data: Dict[str, Any]) -> T:
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if isinstance(value, str) and "datetime" in str(f.type):
            value = datetime.fromisoformat(value)
        kwargs[f.name] = value
    return cls(**kwargs)


class MemoryStore:
    """In-process backing store for development and tests.

    All tables live in dicts guarded by one re-entrant lock. ``transaction``
    holds the lock for the whole unit of work and restores a snapshot when
    the block raises, so partial writes are never observable. When
    ``fs_root`` is given, committed state is written to a JSON file.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.permissions: Dict[int, Permission] = {}
        self.roles: Dict[int, Role] = {}
        self.assignments: Dict[Tuple[int, int], UserRoleAssignment] = {}
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.signing_keys: Dict[str, SigningKeyRecord] = {}
        self.audit_log: List[AuditLogEntry] = []
        self._seq: Dict[str, int] = {}
        # RLock so store methods can be called inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self.seed_defaults()

    # ------------------------------------------------------------------
    # transactions and persistence
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._data_lock:
            snapshot = self._snapshot()
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._tx_depth -= 1
            if self._tx_depth == 0:
                self._persist_state()

    def _snapshot(self) -> Dict[str, Any]:
        state = {name: copy.deepcopy(getattr(self, name)) for name in _TABLES if name != "audit_log"}
        # Audit entries are immutable; copying the list is enough
        state["audit_log"] = list(self.audit_log)
        return state

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    def _after_write(self) -> None:
        if self._tx_depth == 0:
            self._persist_state()

    def _next_id(self, table: str) -> int:
        value = self._seq.get(table, 0) + 1
        self._seq[table] = value
        return value

    def _state_path(self) -> Optional[Path]:
        if not self.fs_root:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "tessera_store.json"

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [_encode(u) for u in self.users.values()],
            "permissions": [_encode(p) for p in self.permissions.values()],
            "roles": [_encode(r) for r in self.roles.values()],
            "assignments": [_encode(a) for a in self.assignments.values()],
            "sessions": [_encode(s) for s in self.sessions.values()],
            "refresh_tokens": [_encode(t) for t in self.refresh_tokens.values()],
            "signing_keys": [_encode(k) for k in self.signing_keys.values()],
            "audit_log": [_encode(e) for e in self.audit_log],
            "seq": self._seq,
        }
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: _decode(User, u) for u in data.get("users", [])}
        self.permissions = {
            p["id"]: _decode(Permission, p) for p in data.get("permissions", [])
        }
        self.roles = {r["id"]: _decode(Role, r) for r in data.get("roles", [])}
        self.assignments = {}
        for raw in data.get("assignments", []):
            assignment = _decode(UserRoleAssignment, raw)
            self.assignments[(assignment.user_id, assignment.role_id)] = assignment
        self.sessions = {
            s["session_id"]: _decode(Session, s) for s in data.get("sessions", [])
        }
        self.refresh_tokens = {
            t["token_hash"]: _decode(RefreshToken, t) for t in data.get("refresh_tokens", [])
        }
        self.signing_keys = {
            k["key_id"]: _decode(SigningKeyRecord, k) for k in data.get("signing_keys", [])
        }
        self.audit_log = [_decode(AuditLogEntry, e) for e in data.get("audit_log", [])]
        self._seq = dict(data.get("seq", {}))
        return True

    def seed_defaults(self) -> None:
        with self.transaction():
            for resource, action, display in DEFAULT_PERMISSIONS:
                if not any(p.name == permission_name(resource, action) for p in self.permissions.values()):
                    self.create_permission(resource, action, display_name=display)
            for name, display, description, patterns in DEFAULT_ROLES:
                if self.get_role(name) is None:
                    self.create_role(
                        name,
                        display,
                        description=description,
                        permissions=patterns,
                        is_system_role=True,
                    )

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        password_algo: str,
        *,
        first_name: str = "",
        last_name: str = "",
        is_active: bool = True,
        is_verified: bool = False,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=self._next_id("users"),
                uuid=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                password_algo=password_algo,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
                is_verified=is_verified,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._after_write()
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_uuid(self, user_uuid: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.uuid == user_uuid), None)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def _update_user(self, user_id: int, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._after_write()
            return replace(user)

    def update_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        self._update_user(user_id, password_hash=password_hash, password_algo=password_algo)

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        return self._update_user(user_id, is_active=is_active)

    def record_login_success(self, user_id: int, at: datetime) -> None:
        self._update_user(user_id, last_login_at=at)

    def record_login_failure(
        self, user_id: int, *, max_attempts: int, lockout_until: datetime
    ) -> Tuple[int, Optional[datetime]]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return 0, None
            attempts = user.failed_login_attempts + 1
            if attempts >= max_attempts:
                user.failed_login_attempts = max_attempts
                user.locked_until = lockout_until
            else:
                user.failed_login_attempts = attempts
            user.updated_at = utcnow()
            self._after_write()
            return user.failed_login_attempts, user.locked_until

    def update_lockout_state(
        self,
        user_id: int,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
    ) -> None:
        self._update_user(
            user_id,
            failed_login_attempts=failed_login_attempts,
            locked_until=locked_until,
        )

    def list_users(
        self,
        *,
        limit: int = 20,
        offset: int = 0,
        search: Optional[str] = None,
        role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[List[User], int]:
        now = now or utcnow()
        with self._data_lock:
            candidates = list(self.users.values())
            if search:
                candidates = [
                    u
                    for u in candidates
                    if search_matches(search, u.email, u.first_name, u.last_name)
                ]
            if role:
                role_obj = self._role_by_name(role)
                if role_obj is None:
                    return [], 0
                members = {
                    a.user_id
                    for a in self.assignments.values()
                    if a.role_id == role_obj.id and a.is_current(now)
                }
                candidates = [u for u in candidates if u.id in members]
            candidates.sort(key=lambda u: (u.created_at, u.id), reverse=True)
            total = len(candidates)
            page = candidates[offset : offset + limit]
            return [replace(u) for u in page], total

    # ------------------------------------------------------------------
    # roles and permissions
    # ------------------------------------------------------------------

    def create_permission(
        self,
        resource: str,
        action: str,
        *,
        display_name: str = "",
        description: str = "",
    ) -> Permission:
        name = permission_name(resource, action)
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            perm = Permission(
                id=self._next_id("permissions"),
                name=name,
                resource=resource,
                action=action,
                display_name=display_name,
                description=description,
            )
            self.permissions[perm.id] = perm
            self._after_write()
            return replace(perm)

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            ordered = sorted(self.permissions.values(), key=lambda p: (p.resource, p.action))
            return [replace(p) for p in ordered]

    def create_role(
        self,
        name: str,
        display_name: str,
        *,
        description: str = "",
        permissions: Sequence[str] = (),
        is_system_role: bool = False,
    ) -> Role:
        with self._data_lock:
            if self._role_by_name(name) is not None:
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(
                id=self._next_id("roles"),
                name=name,
                display_name=display_name,
                description=description,
                permissions=list(permissions),
                is_system_role=is_system_role,
            )
            self.roles[role.id] = role
            self._after_write()
            return replace(role, permissions=list(role.permissions))

    def _role_by_name(self, name: str) -> Optional[Role]:
        return next((r for r in self.roles.values() if r.name == name), None)

    def get_role(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = self._role_by_name(name)
            return replace(role, permissions=list(role.permissions)) if role else None

    def count_role_members(self, role_id: int, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.assignments.values()
                if a.role_id == role_id and a.is_current(now)
            )

    def list_roles(self, now: datetime) -> List[Tuple[Role, int]]:
        with self._data_lock:
            ordered = sorted(self.roles.values(), key=lambda r: (not r.is_system_role, r.name))
            return [
                (replace(r, permissions=list(r.permissions)), self.count_role_members(r.id, now))
                for r in ordered
            ]

    def assign_role(
        self,
        user_id: int,
        role_id: int,
        *,
        assigned_by: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserRoleAssignment:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"field": "role_id"})
            assignment = UserRoleAssignment(
                user_id=user_id,
                role_id=role_id,
                assigned_by=assigned_by,
                assigned_at=utcnow(),
                expires_at=expires_at,
            )
            self.assignments[(user_id, role_id)] = assignment
            self._after_write()
            return replace(assignment)

    def get_user_roles(self, user_id: int, now: datetime) -> List[Role]:
        with self._data_lock:
            roles = [
                self.roles[a.role_id]
                for a in self.assignments.values()
                if a.user_id == user_id and a.is_current(now) and a.role_id in self.roles
            ]
            roles.sort(key=lambda r: (not r.is_system_role, r.name))
            return [replace(r, permissions=list(r.permissions)) for r in roles]

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.session_id in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "session_id"})
            if any(s.jwt_jti == session.jwt_jti for s in self.sessions.values()):
                raise ConstraintViolation("jti already bound", {"field": "jwt_jti"})
            self.sessions[session.session_id] = replace(session)
            self._after_write()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_jti(self, jti: str) -> Optional[Session]:
        with self._data_lock:
            sess = next((s for s in self.sessions.values() if s.jwt_jti == jti), None)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: int, *, now: datetime) -> List[Session]:
        with self._data_lock:
            live = [s for s in self.sessions.values() if s.user_id == user_id and s.is_live(now)]
            live.sort(key=lambda s: s.last_activity, reverse=True)
            return [replace(s) for s in live]

    def update_session_access(
        self, session_id: str, *, jwt_jti: str, last_activity: datetime
    ) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.jwt_jti = jwt_jti
            sess.last_activity = last_activity
            self._after_write()

    def deactivate_session(
        self, session_id: str, *, reason: str, at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return None
            sess.is_active = False
            sess.revoked_at = at
            sess.revoke_reason = reason
            self._after_write()
            return replace(sess)

    def deactivate_user_sessions(
        self,
        user_id: int,
        *,
        reason: str,
        at: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[Session]:
        with self._data_lock:
            changed = []
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id and sess.session_id == except_session_id:
                    continue
                sess.is_active = False
                sess.revoked_at = at
                sess.revoke_reason = reason
                changed.append(replace(sess))
            if changed:
                self._after_write()
            return changed

    def expire_sessions(self, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.is_active and sess.expires_at <= now:
                    sess.is_active = False
                    sess.revoked_at = now
                    sess.revoke_reason = "expired"
                    count += 1
            if count:
                self._after_write()
            return count

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(
        self, token_hash: str, user_id: int, session_id: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
            if session_id not in self.sessions:
                raise ConstraintViolation("session does not exist", {"field": "session_id"})
            token = RefreshToken(
                id=self._next_id("refresh_tokens"),
                token_hash=token_hash,
                user_id=user_id,
                session_id=session_id,
                expires_at=expires_at,
            )
            self.refresh_tokens[token_hash] = token
            self._after_write()
            return replace(token)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            return replace(token) if token else None

    def redeem_refresh_token(self, token_hash: str, now: datetime) -> Optional[RefreshToken]:
        """Mark a redeemable token used and return it; None if it was not redeemable."""
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            if token is None or not token.is_redeemable(now):
                return None
            token.used_at = now
            self._after_write()
            return replace(token)

    def _revoke_tokens(self, predicate, *, reason: str, at: datetime, revoked_by: Optional[int]) -> List[RefreshToken]:
        with self._data_lock:
            revoked = []
            for token in self.refresh_tokens.values():
                if token.is_revoked or not predicate(token):
                    continue
                token.is_revoked = True
                token.revoked_at = at
                token.revoke_reason = reason
                token.revoked_by = revoked_by
                revoked.append(replace(token))
            if revoked:
                self._after_write()
            return revoked

    def revoke_session_refresh_tokens(
        self,
        session_id: str,
        *,
        reason: str,
        at: datetime,
        revoked_by: Optional[int] = None,
    ) -> List[RefreshToken]:
        return self._revoke_tokens(
            lambda t: t.session_id == session_id, reason=reason, at=at, revoked_by=revoked_by
        )

    def revoke_user_refresh_tokens(
        self,
        user_id: int,
        *,
        reason: str,
        at: datetime,
        revoked_by: Optional[int] = None,
    ) -> List[RefreshToken]:
        return self._revoke_tokens(
            lambda t: t.user_id == user_id, reason=reason, at=at, revoked_by=revoked_by
        )

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        with self._data_lock:
            stale = [h for h, t in self.refresh_tokens.items() if t.expires_at < expired_before]
            for token_hash in stale:
                del self.refresh_tokens[token_hash]
            if stale:
                self._after_write()
            return len(stale)

    # ------------------------------------------------------------------
    # signing keys
    # ------------------------------------------------------------------

    def get_active_signing_key(self) -> Optional[SigningKeyRecord]:
        with self._data_lock:
            active = [k for k in self.signing_keys.values() if k.is_active]
            if not active:
                return None
            return replace(max(active, key=lambda k: k.created_at))

    def get_signing_key(self, key_id: str) -> Optional[SigningKeyRecord]:
        with self._data_lock:
            record = self.signing_keys.get(key_id)
            return replace(record) if record else None

    def list_verification_keys(self, now: datetime) -> List[SigningKeyRecord]:
        with self._data_lock:
            usable = [k for k in self.signing_keys.values() if k.verifies_at(now)]
            usable.sort(key=lambda k: k.created_at, reverse=True)
            return [replace(k) for k in usable]

    def save_signing_key(self, record: SigningKeyRecord) -> SigningKeyRecord:
        with self._data_lock:
            if record.key_id in self.signing_keys:
                raise ConstraintViolation("key id already exists", {"field": "key_id"})
            if record.is_active and any(k.is_active for k in self.signing_keys.values()):
                raise ConstraintViolation("an active signing key already exists", {"field": "is_active"})
            self.signing_keys[record.key_id] = replace(record)
            self._after_write()
            return replace(record)

    def rotate_signing_key(
        self, record: SigningKeyRecord, *, rotated_at: datetime, verify_until: datetime
    ) -> SigningKeyRecord:
        with self.transaction():
            for key in self.signing_keys.values():
                if key.is_active:
                    key.is_active = False
                    key.rotated_at = rotated_at
                    key.expires_at = verify_until
            return self.save_signing_key(record)

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------

    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            stored = replace(entry, id=self._next_id("audit_log"), details=dict(entry.details))
            self.audit_log.append(stored)
            self._after_write()
            return stored

    def list_audit_entries(
        self,
        *,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = [
                e
                for e in reversed(self.audit_log)
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
            ]
            return entries[offset : offset + limit]
