from __future__ import annotations

from typing import Any, Dict, Optional

from tessera.logging import get_logger, sanitize_error_message
from tessera.storage.models import AuditLogEntry, utcnow

logger = get_logger(__name__)


class AuditSink:
    """Append-only audit trail.

    Each write runs in its own nested transaction (a savepoint when called
    inside a larger unit of work), so a failed audit insert is rolled back
    alone and the surrounding operation carries on.
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    def record(
        self,
        action: str,
        *,
        success: bool = True,
        user_id: Optional[int] = None,
        session_id: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        entry = AuditLogEntry(
            action=action,
            success=success,
            user_id=user_id,
            session_id=session_id,
            resource=resource,
            resource_id=resource_id,
            details=dict(details or {}),
            error_message=error_message,
            ip_addr=ip_addr,
            user_agent=user_agent,
            created_at=utcnow(),
        )
        try:
            with self.store.transaction():
                stored = self.store.append_audit_entry(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action,
                user_id=user_id,
                error=sanitize_error_message(str(exc)),
            )
            return None
        logger.info(
            "audit_event",
            action=action,
            success=success,
            user_id=user_id,
            session_id=session_id,
            resource=resource,
            resource_id=resource_id,
            ip_addr=ip_addr,
        )
        return stored

    def query(
        self,
        *,
        user_id: Optional[int] = None,
        action: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ):
        return self.store.list_audit_entries(
            user_id=user_id, action=action, limit=limit, offset=offset
        )
