"""
Audit Logging for Lodge Identity Core

Tracks the actions that change who may do what:
- Authentication (login, failed login, registration)
- Role changes and admin transfers, including partial transfers
- Membership auto-repair during transfers
- Reconciliation runs, snapshots and rollbacks

Storage: JSON Lines file next to the file-backend data directory.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any, Union
from pathlib import Path
import logging
from enum import Enum
from pydantic import BaseModel, Field
import threading

from config import get_settings

logger = logging.getLogger(__name__)

# Thread lock for file writes
_write_lock = threading.Lock()


# ==================== ENUMS ====================

class AuditAction(str, Enum):
    """Auditable actions"""

    # Authentication
    IDENTITY_LOGIN = "identity.login"
    IDENTITY_LOGIN_FAILED = "identity.login_failed"
    IDENTITY_REGISTER = "identity.register"
    PROFILE_UPDATE = "identity.profile_update"

    # Roles
    ROLE_CHANGE = "role.change"
    ROLE_TRANSFER = "role.transfer"
    ROLE_TRANSFER_PARTIAL = "role.transfer_partial"
    MEMBERSHIP_REPAIRED = "membership.repaired"
    RECORD_SYNTHESIZED = "membership.record_synthesized"

    # Maintenance
    RECONCILIATION_RUN = "maintenance.reconciliation"
    SNAPSHOT_CREATED = "maintenance.snapshot"
    ROLLBACK = "maintenance.rollback"


class ResourceType(str, Enum):
    AUTH = "auth"
    IDENTITY = "identity"
    LODGE = "lodge"
    SYSTEM = "system"


# ==================== MODELS ====================

class AuditLogEntry(BaseModel):
    """Audit log entry model"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    error_message: Optional[str] = None


# ==================== AUDIT LOGGER ====================

class AuditLogger:
    """
    Append-only audit trail.

    Usage:
        get_audit_logger().log(
            action=AuditAction.ROLE_TRANSFER,
            resource_type=ResourceType.LODGE,
            user_id=requester.id,
            resource_id=lodge_id,
            details={"candidate": candidate.id},
        )
    """

    def __init__(self, log_file: Optional[Path] = None):
        self.log_file = Path(log_file) if log_file else get_settings().data_path / "audit_log.jsonl"
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def log(
        self,
        action: Union[AuditAction, str],
        resource_type: Union[ResourceType, str],
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None
    ) -> AuditLogEntry:
        """
        Log an audit entry.

        Args:
            action: The action being performed
            resource_type: Type of resource affected
            user_id: ID of the identity performing the action
            user_email: Email of the identity (for display)
            resource_id: ID of the affected resource
            details: Additional details about the action
            success: Whether the action succeeded
            error_message: Error message if action failed

        Returns:
            The created audit log entry
        """
        action_str = action.value if isinstance(action, AuditAction) else action
        resource_type_str = resource_type.value if isinstance(resource_type, ResourceType) else resource_type

        entry = AuditLogEntry(
            user_id=user_id,
            user_email=user_email,
            action=action_str,
            resource_type=resource_type_str,
            resource_id=str(resource_id) if resource_id else None,
            details=details or {},
            success=success,
            error_message=error_message
        )

        self._write_entry(entry)

        log_level = logging.INFO if success else logging.WARNING
        logger.log(
            log_level,
            f"AUDIT: {action_str} on {resource_type_str}"
            f"{f'/{resource_id}' if resource_id else ''}"
            f" by {user_email or user_id or 'system'}"
            f"{f' - FAILED: {error_message}' if not success else ''}"
        )

        return entry

    def _write_entry(self, entry: AuditLogEntry):
        """Write an entry to the log file (thread-safe)"""
        with _write_lock:
            try:
                with open(self.log_file, 'a') as f:
                    f.write(json.dumps(entry.model_dump(), default=str) + "\n")
            except OSError as e:
                # The audited action itself already happened; do not fail it
                logger.error(f"Failed to write audit log: {e}")

    def get_logs(
        self,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditLogEntry]:
        """Most recent entries first, optionally filtered by action or actor."""
        logs = []
        if not self.log_file.exists():
            return logs

        with open(self.log_file, 'r') as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = AuditLogEntry(**json.loads(line))
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning(f"Failed to parse audit log entry: {e}")
                    continue
                if action and entry.action != action:
                    continue
                if user_id and entry.user_id != user_id:
                    continue
                logs.append(entry)

        logs.sort(key=lambda x: x.timestamp, reverse=True)
        return logs[:limit]


# ==================== MODULE API ====================

_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance"""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def configure_audit_log(log_file: Path) -> AuditLogger:
    """Point the global audit logger at ``log_file``."""
    global _audit_logger
    _audit_logger = AuditLogger(log_file)
    return _audit_logger


def log_action(
    action: Union[AuditAction, str],
    resource_type: Union[ResourceType, str],
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    resource_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
    error_message: Optional[str] = None
) -> AuditLogEntry:
    """Convenience function to log an action."""
    return get_audit_logger().log(
        action=action,
        resource_type=resource_type,
        user_id=user_id,
        user_email=user_email,
        resource_id=resource_id,
        details=details,
        success=success,
        error_message=error_message
    )


def log_auth_action(
    action: Union[AuditAction, str],
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
    error_message: Optional[str] = None
) -> AuditLogEntry:
    """Convenience function for authentication-related logging"""
    return log_action(
        action=action,
        resource_type=ResourceType.AUTH,
        user_id=user_id,
        user_email=user_email,
        details=details,
        success=success,
        error_message=error_message
    )


def get_audit_logs(action: Optional[str] = None, user_id: Optional[str] = None, limit: int = 100) -> List[AuditLogEntry]:
    return get_audit_logger().get_logs(action=action, user_id=user_id, limit=limit)
