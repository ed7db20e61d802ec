from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.storage.models import User

logger = get_logger(__name__)


class LockoutPolicy:
    """Counts consecutive failed logins and computes lockout windows.

    The counter is incremented by the store in one statement so concurrent
    failures are never lost. Once the threshold is reached the counter stays
    put until a successful login resets it.
    """

    def __init__(self, store: Any, *, max_attempts: int = 5, lockout_minutes: int = 30) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration = timedelta(minutes=lockout_minutes)

    @classmethod
    def from_settings(cls, store: Any, settings: Settings) -> "LockoutPolicy":
        return cls(
            store,
            max_attempts=settings.max_failed_login_attempts,
            lockout_minutes=settings.lockout_duration_minutes,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def record_failure(self, user_id: int) -> Optional[datetime]:
        attempts, locked_until = self.store.record_login_failure(
            user_id,
            max_attempts=self.max_attempts,
            lockout_until=self._now() + self.lockout_duration,
        )
        if locked_until is not None and attempts >= self.max_attempts:
            logger.warning(
                "account_locked",
                user_id=user_id,
                attempts=attempts,
                locked_until=locked_until.isoformat(),
            )
            return locked_until
        return None

    def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        now = now or self._now()
        return user.locked_until is not None and user.locked_until > now

    def reset(self, user_id: int) -> None:
        self.store.update_lockout_state(user_id, failed_login_attempts=0, locked_until=None)

    def unlock(self, user_id: int) -> None:
        self.reset(user_id)
        logger.info("account_unlocked", user_id=user_id)
