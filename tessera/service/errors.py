from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional


class ErrorCode(str, Enum):
    """Closed set of error kinds surfaced to callers."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_DISABLED = "ACCOUNT_DISABLED"
    EMAIL_EXISTS = "EMAIL_EXISTS"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    INVALID_CURRENT_PASSWORD = "INVALID_CURRENT_PASSWORD"
    NO_TOKEN = "NO_TOKEN"
    INVALID_TOKEN_FORMAT = "INVALID_TOKEN_FORMAT"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    SESSION_REVOKED = "SESSION_REVOKED"
    INVALID_REFRESH_TOKEN = "INVALID_REFRESH_TOKEN"
    INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
    INSUFFICIENT_PERMISSION = "INSUFFICIENT_PERMISSION"
    NOT_RESOURCE_OWNER = "NOT_RESOURCE_OWNER"
    MISSING_RESOURCE_ID = "MISSING_RESOURCE_ID"
    ROLE_NOT_FOUND = "ROLE_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    SIGNING_UNAVAILABLE = "SIGNING_UNAVAILABLE"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins one ``ErrorCode`` and an HTTP status. Structured
    context travels in ``detail`` rather than being folded into the message.
    """

    status_code: int = 400
    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    default_message: str = "request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.code.value

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.detail:
            payload["details"] = self.detail
        return payload


class ValidationError(ServiceError):
    """Request validation failed (400)."""

    status_code = 400
    code = ErrorCode.VALIDATION_ERROR
    default_message = "validation failed"


class WeakPasswordError(ValidationError):
    code = ErrorCode.WEAK_PASSWORD
    default_message = "password does not meet the strength policy"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        errors: Iterable[str] = (),
        suggestions: Iterable[str] = (),
    ) -> None:
        errors = list(errors)
        suggestions = list(suggestions)
        if message is None and errors:
            message = f"Weak password: {', '.join(errors)}"
        super().__init__(message, detail={"errors": errors, "suggestions": suggestions})
        self.errors = errors
        self.suggestions = suggestions


class WeakInputError(WeakPasswordError):
    """Empty input handed to the password hasher."""

    default_message = "password must not be empty"


class MissingResourceIdError(ValidationError):
    code = ErrorCode.MISSING_RESOURCE_ID
    default_message = "resource identifier is missing"

    def __init__(self, field: str, source: str) -> None:
        super().__init__(
            f"missing '{field}' in {source}",
            detail={"field": field, "source": source},
        )


class InvalidCurrentPasswordError(ValidationError):
    code = ErrorCode.INVALID_CURRENT_PASSWORD
    default_message = "current password is incorrect"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""

    status_code = 401
    code = ErrorCode.INVALID_CREDENTIALS
    default_message = "authentication required"


class InvalidCredentialsError(AuthenticationError):
    code = ErrorCode.INVALID_CREDENTIALS
    default_message = "invalid credentials"


class NoTokenError(AuthenticationError):
    code = ErrorCode.NO_TOKEN
    default_message = "access token required"


class InvalidTokenFormatError(AuthenticationError):
    code = ErrorCode.INVALID_TOKEN_FORMAT
    default_message = "authorization header must use the Bearer scheme"


class InvalidTokenError(AuthenticationError):
    code = ErrorCode.INVALID_TOKEN
    default_message = "invalid token"


class TokenExpiredError(AuthenticationError):
    code = ErrorCode.TOKEN_EXPIRED
    default_message = "token expired"


class SessionRevokedError(AuthenticationError):
    code = ErrorCode.SESSION_REVOKED
    default_message = "session revoked or expired"


class InvalidRefreshTokenError(AuthenticationError):
    code = ErrorCode.INVALID_REFRESH_TOKEN
    default_message = "invalid or expired refresh token"


class RefreshTokenReplayError(InvalidRefreshTokenError):
    """A used or revoked refresh token was presented again.

    Shares the wire code of ``InvalidRefreshTokenError`` so clients cannot
    tell replay from an unknown token; callers use the type to react.
    """


class ForbiddenError(ServiceError):
    """Access denied (403)."""

    status_code = 403
    code = ErrorCode.INSUFFICIENT_PERMISSION
    default_message = "forbidden"


class AccountDisabledError(ForbiddenError):
    code = ErrorCode.ACCOUNT_DISABLED
    default_message = "account disabled"


class InsufficientRoleError(ForbiddenError):
    code = ErrorCode.INSUFFICIENT_ROLE
    default_message = "insufficient role"

    def __init__(self, required: Iterable[str]) -> None:
        required = list(required)
        super().__init__(detail={"required": required})
        self.required = required


class InsufficientPermissionError(ForbiddenError):
    code = ErrorCode.INSUFFICIENT_PERMISSION
    default_message = "insufficient permission"

    def __init__(self, required: Iterable[str]) -> None:
        required = list(required)
        super().__init__(detail={"required": required})
        self.required = required


class NotResourceOwnerError(ForbiddenError):
    code = ErrorCode.NOT_RESOURCE_OWNER
    default_message = "not the owner of this resource"


class AccountLockedError(ServiceError):
    """Account temporarily locked after repeated failures (423)."""

    status_code = 423
    code = ErrorCode.ACCOUNT_LOCKED
    default_message = "account temporarily locked"

    def __init__(self, locked_until: Optional[datetime] = None) -> None:
        detail = {"locked_until": locked_until.isoformat()} if locked_until else {}
        super().__init__(detail=detail)
        self.locked_until = locked_until


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""

    status_code = 404
    code = ErrorCode.USER_NOT_FOUND
    default_message = "not found"


class UserNotFoundError(NotFoundError):
    code = ErrorCode.USER_NOT_FOUND
    default_message = "user not found"


class RoleNotFoundError(NotFoundError):
    code = ErrorCode.ROLE_NOT_FOUND
    default_message = "role not found"

    def __init__(self, role_name: str) -> None:
        super().__init__(f"role '{role_name}' not found", detail={"role": role_name})
        self.role_name = role_name


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""

    status_code = 409
    code = ErrorCode.EMAIL_EXISTS
    default_message = "conflict"


class EmailExistsError(ConflictError):
    code = ErrorCode.EMAIL_EXISTS
    default_message = "email already registered"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""

    status_code = 429
    code = ErrorCode.RATE_LIMIT_EXCEEDED
    default_message = "rate limit exceeded"

    def __init__(self, retry_after: int = 0) -> None:
        super().__init__(detail={"retry_after": retry_after} if retry_after else None)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""

    status_code = 500
    code = ErrorCode.INTERNAL_ERROR
    default_message = "internal server error"


class SigningUnavailableError(ServerError):
    """No usable signing key; the process cannot issue tokens."""

    code = ErrorCode.SIGNING_UNAVAILABLE
    default_message = "token signing unavailable"


class ServiceUnavailableError(ServerError):
    status_code = 503
    code = ErrorCode.STORE_UNAVAILABLE
    default_message = "backing store unavailable"


__all__ = [
    "ErrorCode",
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "WeakInputError",
    "MissingResourceIdError",
    "InvalidCurrentPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "NoTokenError",
    "InvalidTokenFormatError",
    "InvalidTokenError",
    "TokenExpiredError",
    "SessionRevokedError",
    "InvalidRefreshTokenError",
    "RefreshTokenReplayError",
    "ForbiddenError",
    "AccountDisabledError",
    "InsufficientRoleError",
    "InsufficientPermissionError",
    "NotResourceOwnerError",
    "AccountLockedError",
    "NotFoundError",
    "UserNotFoundError",
    "RoleNotFoundError",
    "ConflictError",
    "EmailExistsError",
    "RateLimitedError",
    "ServerError",
    "SigningUnavailableError",
    "ServiceUnavailableError",
]
