from __future__ import annotations

import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Tuple, Type, TypeVar

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tessera.logging import get_logger
from tessera.storage.common import (
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLES,
    expand_permission_patterns,
    normalize_email,
    permission_name,
)
from tessera.storage.errors import ConstraintViolation, StoreUnavailable
from tessera.storage.models import (
    AuditLogEntry,
    Permission,
    RefreshToken,
    Role,
    Session,
    SigningKeyRecord,
    User,
    UserRoleAssignment,
)

T = TypeVar("T")

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

REQUIRED_TABLES = (
    "users",
    "roles",
    "permissions",
    "user_roles",
    "role_permissions",
    "user_sessions",
    "refresh_tokens",
    "audit_logs",
    "crypto_keys",
)


def _from_row(cls: Type[T], row: dict) -> T:
    """Build a model from a ``dict_row``, ignoring columns the model lacks."""
    kwargs = {}
    for f in fields(cls):
        if f.name not in row:
            continue
        value = row[f.name]
        if isinstance(value, uuid.UUID):
            value = str(value)
        kwargs[f.name] = value
    return cls(**kwargs)


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresStore:
    """Postgres-backed store for users, RBAC, sessions, tokens, keys and audit.

    Every call draws a connection from a bounded pool. Inside
    ``transaction()`` the connection is pinned to the calling thread so all
    store calls made in that block share one database transaction; nested
    ``transaction()`` blocks become savepoints.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 5.0,
        statement_timeout_ms: int = 5000,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
        )
        self._local = threading.local()
        if verify_schema:
            self._verify_required_schema()

    # ------------------------------------------------------------------
    # connections and transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
            return
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StoreUnavailable("database pool exhausted") from exc
        except errors.OperationalError as exc:
            self.logger.error("postgres_operational_error", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    @contextmanager
    def transaction(self) -> Iterator[None]:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            with conn.transaction():
                yield
            return
        with self._connect() as conn:
            self._local.conn = conn
            try:
                with conn.transaction():
                    yield
            finally:
                self._local.conn = None

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def apply_schema(self, path: Path | None = None) -> None:
        sql = (path or SCHEMA_PATH).read_text()
        with self._connect() as conn:
            conn.execute(sql)
        self.logger.info("postgres_schema_applied", path=str(path or SCHEMA_PATH))

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/migrate.py to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def seed_defaults(self) -> None:
        with self.transaction():
            with self._connect() as conn:
                for resource, action, display in DEFAULT_PERMISSIONS:
                    conn.execute(
                        """
                        INSERT INTO permissions (name, resource, action, display_name)
                        VALUES (%s, %s, %s, %s)
                        ON CONFLICT (name) DO NOTHING
                        """,
                        (permission_name(resource, action), resource, action, display),
                    )
            for name, display, description, patterns in DEFAULT_ROLES:
                if self.get_role(name) is None:
                    self.create_role(
                        name,
                        display,
                        description=description,
                        permissions=patterns,
                        is_system_role=True,
                    )

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
        try:
            with self.transaction(), self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (uuid, email, password_hash, password_algo, first_name, last_name, is_active, is_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        normalize_email(email),
                        password_hash,
                        password_algo,
                        first_name,
                        last_name,
                        is_active,
                        is_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _from_row(User, row)

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT * FROM users WHERE {where}", (value,)).fetchone()
        return _from_row(User, row) if row else None

    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_user("id = %s", user_id)

    def get_user_by_uuid(self, user_uuid: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_uuid))
        except ValueError:
            return None
        return self._fetch_user("uuid = %s", user_uuid)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("lower(email) = %s", normalize_email(email))

    def update_password(self, user_id: int, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET password_hash = %s, password_algo = %s, updated_at = now() WHERE id = %s",
                (password_hash, password_algo, user_id),
            )

    def set_user_active(self, user_id: int, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        return _from_row(User, row) if row else None

    def record_login_success(self, user_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET last_login_at = %s, updated_at = now()
                WHERE id = %s
                """,
                (at, user_id),
            )

    def record_login_failure(
        self, user_id: int, *, max_attempts: int, lockout_until: datetime
    ) -> Tuple[int, Optional[datetime]]:
        # Single statement so concurrent failures cannot lose increments
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = LEAST(failed_login_attempts + 1, %(max)s),
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %(max)s THEN %(until)s
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %(id)s
                RETURNING failed_login_attempts, locked_until
                """,
                {"max": max_attempts, "until": lockout_until, "id": user_id},
            ).fetchone()
        if not row:
            return 0, None
        return int(row["failed_login_attempts"]), row.get("locked_until")

    def update_lockout_state(
        self,
        user_id: int,
        *,
        failed_login_attempts: int,
        locked_until: Optional[datetime],
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET failed_login_attempts = %s, locked_until = %s, updated_at = now() WHERE id = %s",
                (failed_login_attempts, locked_until, user_id),
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
        clauses: List[str] = []
        params: List[Any] = []
        if search:
            pattern = f"%{search.strip().lower()}%"
            clauses.append(
                "(lower(u.email) LIKE %s OR lower(u.first_name) LIKE %s OR lower(u.last_name) LIKE %s)"
            )
            params.extend([pattern, pattern, pattern])
        if role:
            clauses.append(
                """
                EXISTS (
                    SELECT 1 FROM user_roles ur JOIN roles r ON r.id = ur.role_id
                    WHERE ur.user_id = u.id AND r.name = %s
                      AND (ur.expires_at IS NULL OR ur.expires_at > COALESCE(%s, now()))
                )
                """
            )
            params.extend([role, now])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT count(*) AS total FROM users u {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT u.* FROM users u {where} ORDER BY u.created_at DESC, u.id DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return [_from_row(User, row) for row in rows], int(total_row["total"])

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
        try:
            with self.transaction(), self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permissions (name, resource, action, display_name, description)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (permission_name(resource, action), resource, action, display_name, description),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return _from_row(Permission, row)

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permissions ORDER BY resource, action"
            ).fetchall()
        return [_from_row(Permission, row) for row in rows]

    def _role_from_row(self, row: dict) -> Role:
        role = _from_row(Role, row)
        role.permissions = list(_load_json(row.get("permissions"), []))
        return role

    def create_role(
        self,
        name: str,
        display_name: str,
        *,
        description: str = "",
        permissions: Sequence[str] = (),
        is_system_role: bool = False,
    ) -> Role:
        catalogue = self.list_permissions()
        by_name = {perm.name: perm.id for perm in catalogue}
        linked = [
            by_name[perm]
            for perm in expand_permission_patterns(permissions, catalogue)
            if perm in by_name
        ]
        try:
            with self.transaction(), self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO roles (name, display_name, description, permissions, is_system_role)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, display_name, description, json.dumps(list(permissions)), is_system_role),
                ).fetchone()
                for permission_id in linked:
                    conn.execute(
                        "INSERT INTO role_permissions (role_id, permission_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                        (row["id"], permission_id),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return self._role_from_row(row)

    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM roles WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def count_role_members(self, role_id: int, now: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS members FROM user_roles
                WHERE role_id = %s AND (expires_at IS NULL OR expires_at > %s)
                """,
                (role_id, now),
            ).fetchone()
        return int(row["members"]) if row else 0

    def list_roles(self, now: datetime) -> List[Tuple[Role, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.*,
                       (SELECT count(*) FROM user_roles ur
                        WHERE ur.role_id = r.id AND (ur.expires_at IS NULL OR ur.expires_at > %s)) AS user_count
                FROM roles r
                ORDER BY r.is_system_role DESC, r.name
                """,
                (now,),
            ).fetchall()
        return [(self._role_from_row(row), int(row["user_count"])) for row in rows]

    def assign_role(
        self,
        user_id: int,
        role_id: int,
        *,
        assigned_by: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserRoleAssignment:
        try:
            with self.transaction(), self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_roles (user_id, role_id, assigned_by, expires_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id, role_id) DO UPDATE
                    SET assigned_by = EXCLUDED.assigned_by,
                        assigned_at = now(),
                        expires_at = EXCLUDED.expires_at
                    RETURNING *
                    """,
                    (user_id, role_id, assigned_by, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role assignment references a missing row", {"user_id": user_id, "role_id": role_id})
        return _from_row(UserRoleAssignment, row)

    def get_user_roles(self, user_id: int, now: datetime) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM user_roles ur JOIN roles r ON r.id = ur.role_id
                WHERE ur.user_id = %s AND (ur.expires_at IS NULL OR ur.expires_at > %s)
                ORDER BY r.is_system_role DESC, r.name
                """,
                (user_id, now),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self.transaction(), self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_sessions (session_id, user_id, jwt_jti, expires_at, ip_addr, user_agent, is_active, created_at, last_activity)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.session_id,
                        session.user_id,
                        session.jwt_jti,
                        session.expires_at,
                        session.ip_addr,
                        session.user_agent,
                        session.is_active,
                        session.created_at,
                        session.last_activity,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.session_id})
        return session

    def _fetch_session(self, where: str, value: Any) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM user_sessions WHERE {where}", (value,)
            ).fetchone()
        return _from_row(Session, row) if row else None

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._fetch_session("session_id = %s", session_id)

    def get_session_by_jti(self, jti: str) -> Optional[Session]:
        return self._fetch_session("jwt_jti = %s", jti)

    def list_user_sessions(self, user_id: int, *, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY last_activity DESC
                """,
                (user_id, now),
            ).fetchall()
        return [_from_row(Session, row) for row in rows]

    def update_session_access(
        self, session_id: str, *, jwt_jti: str, last_activity: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_sessions SET jwt_jti = %s, last_activity = %s WHERE session_id = %s",
                (jwt_jti, last_activity, session_id),
            )

    def deactivate_session(
        self, session_id: str, *, reason: str, at: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_sessions
                SET is_active = FALSE, revoked_at = %s, revoke_reason = %s
                WHERE session_id = %s AND is_active
                RETURNING *
                """,
                (at, reason, session_id),
            ).fetchone()
        return _from_row(Session, row) if row else None

    def deactivate_user_sessions(
        self,
        user_id: int,
        *,
        reason: str,
        at: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_sessions
                SET is_active = FALSE, revoked_at = %s, revoke_reason = %s
                WHERE user_id = %s AND is_active AND session_id IS DISTINCT FROM %s
                RETURNING *
                """,
                (at, reason, user_id, except_session_id),
            ).fetchall()
        return [_from_row(Session, row) for row in rows]

    def expire_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_sessions
                SET is_active = FALSE, revoked_at = %s, revoke_reason = 'expired'
                WHERE is_active AND expires_at <= %s
                """,
                (now, now),
            )
            return result.rowcount

    # ------------------------------------------------------------------
    # refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(
        self, token_hash: str, user_id: int, session_id: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self.transaction(), self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_tokens (token_hash, user_id, session_id, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (token_hash, user_id, session_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session does not exist", {"field": "session_id"})
        return _from_row(RefreshToken, row)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _from_row(RefreshToken, row) if row else None

    def redeem_refresh_token(self, token_hash: str, now: datetime) -> Optional[RefreshToken]:
        """Mark a redeemable token used and return it; None if it was not redeemable.

        Check and mark happen in one conditional update, so of two racing
        redemptions exactly one sees a returned row.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_tokens
                SET used_at = %s
                WHERE token_hash = %s AND used_at IS NULL AND NOT is_revoked AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        return _from_row(RefreshToken, row) if row else None

    def revoke_session_refresh_tokens(
        self,
        session_id: str,
        *,
        reason: str,
        at: datetime,
        revoked_by: Optional[int] = None,
    ) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_tokens
                SET is_revoked = TRUE, revoked_at = %s, revoke_reason = %s, revoked_by = %s
                WHERE session_id = %s AND NOT is_revoked
                RETURNING *
                """,
                (at, reason, revoked_by, session_id),
            ).fetchall()
        return [_from_row(RefreshToken, row) for row in rows]

    def revoke_user_refresh_tokens(
        self,
        user_id: int,
        *,
        reason: str,
        at: datetime,
        revoked_by: Optional[int] = None,
    ) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_tokens
                SET is_revoked = TRUE, revoked_at = %s, revoke_reason = %s, revoked_by = %s
                WHERE user_id = %s AND NOT is_revoked
                RETURNING *
                """,
                (at, reason, revoked_by, user_id),
            ).fetchall()
        return [_from_row(RefreshToken, row) for row in rows]

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at < %s", (expired_before,)
            )
            return result.rowcount

    # ------------------------------------------------------------------
    # signing keys
    # ------------------------------------------------------------------

    def _key_from_row(self, row: dict) -> SigningKeyRecord:
        record = _from_row(SigningKeyRecord, row)
        record.key_metadata = dict(_load_json(row.get("key_metadata"), {}))
        return record

    def get_active_signing_key(self) -> Optional[SigningKeyRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM crypto_keys WHERE is_active ORDER BY created_at DESC LIMIT 1"
            ).fetchone()
        return self._key_from_row(row) if row else None

    def get_signing_key(self, key_id: str) -> Optional[SigningKeyRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM crypto_keys WHERE key_id = %s", (key_id,)
            ).fetchone()
        return self._key_from_row(row) if row else None

    def list_verification_keys(self, now: datetime) -> List[SigningKeyRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM crypto_keys
                WHERE is_active OR expires_at > %s
                ORDER BY created_at DESC
                """,
                (now,),
            ).fetchall()
        return [self._key_from_row(row) for row in rows]

    def save_signing_key(self, record: SigningKeyRecord) -> SigningKeyRecord:
        try:
            with self.transaction(), self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO crypto_keys (key_id, algorithm, public_key, private_key_encrypted, is_active, created_at, rotated_at, expires_at, key_metadata)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.key_id,
                        record.algorithm,
                        record.public_key,
                        record.private_key_encrypted,
                        record.is_active,
                        record.created_at,
                        record.rotated_at,
                        record.expires_at,
                        json.dumps(record.key_metadata),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("an active signing key already exists", {"field": "is_active"})
        return record

    def rotate_signing_key(
        self, record: SigningKeyRecord, *, rotated_at: datetime, verify_until: datetime
    ) -> SigningKeyRecord:
        with self.transaction():
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE crypto_keys
                    SET is_active = FALSE, rotated_at = %s, expires_at = %s
                    WHERE is_active
                    """,
                    (rotated_at, verify_until),
                )
            return self.save_signing_key(record)

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------

    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_logs (user_id, session_id, action, resource, resource_id, details, success, error_message, ip_addr, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING id
                """,
                (
                    entry.user_id,
                    entry.session_id,
                    entry.action,
                    entry.resource,
                    entry.resource_id,
                    json.dumps(entry.details, default=str),
                    entry.success,
                    entry.error_message,
                    entry.ip_addr,
                    entry.user_agent,
                    entry.created_at,
                ),
            ).fetchone()
        return AuditLogEntry(**{**_entry_fields(entry), "id": row["id"]})

    def list_audit_entries(
        self,
        *,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditLogEntry]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_logs {where} ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        entries = []
        for row in rows:
            data = dict(row)
            data["details"] = dict(_load_json(row.get("details"), {}))
            entries.append(_from_row(AuditLogEntry, data))
        return entries


def _entry_fields(entry: AuditLogEntry) -> dict:
    return {f.name: getattr(entry, f.name) for f in fields(entry)}
