from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tessera.logging import get_logger

logger = get_logger(__name__)

SUPPORTED_JWT_ALGORITHMS = ("RS256", "RS384", "RS512")

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication engine and its HTTP surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tessera", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        "redis://localhost:6379/0",
        "REDIS_URL",
        description="Rotation cache and rate limits; empty string disables Redis",
    )
    shared_fs_root: str = env_field("/srv/tessera", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; allows runtime resets and Redis fallback.",
    )

    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_pool_timeout_seconds: float = env_field(
        5.0, "DB_POOL_TIMEOUT_SECONDS", description="Max wait for a pooled connection"
    )
    db_statement_timeout_ms: int = env_field(5000, "DB_STATEMENT_TIMEOUT_MS")
    redis_socket_timeout_seconds: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT_SECONDS")

    master_secret: str | None = env_field(
        None,
        "TESSERA_MASTER_SECRET",
        description="Encrypts stored private keys and keys the refresh-token hash",
        validate_default=True,
    )

    jwt_issuer: str = env_field("tessera-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("tessera-platform", "JWT_AUDIENCE")
    jwt_algorithm: str = env_field("RS256", "JWT_ALGORITHM")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    token_leeway_seconds: int = env_field(5, "TOKEN_LEEWAY_SECONDS")
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a replacement refresh token on every refresh",
    )
    revoke_session_on_refresh_replay: bool = env_field(
        True,
        "REVOKE_SESSION_ON_REFRESH_REPLAY",
        description="Revoke the whole session when a used or revoked refresh token is presented",
    )

    signing_key_size: int = env_field(2048, "SIGNING_KEY_SIZE")
    signing_key_retention_minutes: int = env_field(
        24 * 60,
        "SIGNING_KEY_RETENTION_MINUTES",
        description="How long a retired key still verifies tokens",
    )
    signing_key_rotation_days: int = env_field(
        0, "SIGNING_KEY_ROTATION_DAYS", description="Scheduled rotation period; 0 disables"
    )
    max_retired_keys: int = env_field(16, "MAX_RETIRED_KEYS")

    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(30, "LOCKOUT_DURATION_MINUTES")

    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(2**16, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")
    argon2_hash_len: int = env_field(32, "ARGON2_HASH_LEN")
    bcrypt_rounds: int = env_field(12, "BCRYPT_ROUNDS")

    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_digit: bool = env_field(True, "PASSWORD_REQUIRE_DIGIT")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")

    login_rate_limit_per_minute: int = env_field(10, "LOGIN_RATE_LIMIT_PER_MINUTE")
    register_rate_limit_per_minute: int = env_field(10, "REGISTER_RATE_LIMIT_PER_MINUTE")
    refresh_rate_limit_per_minute: int = env_field(30, "REFRESH_RATE_LIMIT_PER_MINUTE")

    default_role: str = env_field("user", "DEFAULT_ROLE")
    maintenance_interval_seconds: int = env_field(300, "MAINTENANCE_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        algorithm = value.upper()
        if algorithm not in SUPPORTED_JWT_ALGORITHMS:
            raise ValueError(
                f"jwt_algorithm must be one of {', '.join(SUPPORTED_JWT_ALGORITHMS)}"
            )
        return algorithm

    @field_validator("max_failed_login_attempts", "access_token_ttl_minutes", "refresh_token_ttl_minutes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("signing_key_size")
    @classmethod
    def _validate_key_size(cls, value: int) -> int:
        if value < 2048:
            raise ValueError("signing_key_size must be at least 2048 bits")
        return value

    @field_validator("master_secret")
    @classmethod
    def _ensure_master_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"TESSERA_MASTER_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        # Persist a generated secret so encrypted keys stay readable across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/tessera"))
        secret_path = fs_root / ".master_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "master_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= _MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "master_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".master_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "master_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist master secret; set TESSERA_MASTER_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("master_secret_generated", path=str(secret_path))
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
