from __future__ import annotations

from typing import Any, Optional, Protocol

from taskhub.logging import get_logger
from taskhub.storage.models import AuditCategory, AuditLogEntry, new_id, utcnow

# Action names written to the audit trail
LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGIN_FAILURE = "LOGIN_FAILURE"
LOGOUT = "LOGOUT"
TOKEN_REFRESH = "TOKEN_REFRESH"
DEVICE_REVOKED = "DEVICE_REVOKED"
USER_REGISTERED = "USER_REGISTERED"
PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
PASSWORD_RESET = "PASSWORD_RESET"
PASSWORD_CHANGED = "PASSWORD_CHANGED"
USER_BANNED = "USER_BANNED"
USER_UNBANNED = "USER_UNBANNED"
USER_ROLE_CHANGED = "USER_ROLE_CHANGED"
ADMIN_RESET_PASSWORD = "ADMIN_RESET_PASSWORD"
WORKSPACE_CREATED = "WORKSPACE_CREATED"
WORKSPACE_DELETED = "WORKSPACE_DELETED"
WORKSPACE_MEMBER_ADDED = "WORKSPACE_MEMBER_ADDED"
WORKSPACE_MEMBER_ROLE_CHANGED = "WORKSPACE_MEMBER_ROLE_CHANGED"
WORKSPACE_MEMBER_REMOVED = "WORKSPACE_MEMBER_REMOVED"
PROJECT_CREATED = "PROJECT_CREATED"
PROJECT_UPDATED = "PROJECT_UPDATED"
PROJECT_DELETED = "PROJECT_DELETED"
PROJECT_MEMBER_ADDED = "PROJECT_MEMBER_ADDED"
PROJECT_MEMBER_ROLE_CHANGED = "PROJECT_MEMBER_ROLE_CHANGED"
PROJECT_MEMBER_REMOVED = "PROJECT_MEMBER_REMOVED"
TASK_CREATED = "TASK_CREATED"
TASK_DELETED = "TASK_DELETED"
TASK_ASSIGNEES_CHANGED = "TASK_ASSIGNEES_CHANGED"
TASK_STATUS_CHANGE = "TASK_STATUS_CHANGE"


class AuditStore(Protocol):
    def record_audit_event(self, entry: AuditLogEntry) -> None: ...


class AuditLogger:
    """Structured audit sink handed to services by the composition root.

    ``record`` is fire-and-forget: persistence failures are logged and never
    reach the caller, so an audit outage cannot fail a login or a logout.
    """

    def __init__(self, store: Optional[AuditStore] = None, *, persist: bool = True) -> None:
        self.store = store
        self.persist = persist and store is not None
        self.logger = get_logger("taskhub.audit")

    def record(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        level: str = "info",
        category: AuditCategory = AuditCategory.USER_LOG,
    ) -> Optional[AuditLogEntry]:
        entry = AuditLogEntry(
            id=new_id(),
            action=action,
            level=level,
            category=category,
            user_id=user_id,
            ip_address=ip_address,
            details=dict(details or {}),
            created_at=utcnow(),
        )
        log = self.logger.warning if level in {"warn", "warning", "security"} else self.logger.info
        log(
            "audit_event",
            action=action,
            audit_user_id=user_id,
            ip_address=ip_address,
            category=entry.category.value,
            details=entry.details,
        )
        if self.persist:
            try:
                self.store.record_audit_event(entry)
            except Exception as exc:
                self.logger.warning(
                    "audit_persist_failed", action=action, error_type=type(exc).__name__, error=str(exc)
                )
        return entry

    def logger_for(self, component: str):
        """Component logger owned by the same sink the services were handed."""
        return self.logger.bind(component=component)
