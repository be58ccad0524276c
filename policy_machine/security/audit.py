"""
Audit Logging

Audit trail of privilege decisions and policy graph changes.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Authorization
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"

    # Policy elements
    ELEMENT_CREATED = "element_created"

    # Relations
    ASSIGNMENT_ADDED = "assignment_added"
    ASSIGNMENT_REMOVED = "assignment_removed"
    LINK_ADDED = "link_added"
    LINK_REMOVED = "link_removed"
    ASSOCIATION_ADDED = "association_added"

    # Storage
    BULK_FLUSHED = "bulk_flushed"
    TRANSACTION_ROLLED_BACK = "transaction_rolled_back"


class AuditSeverity(str, Enum):
    """Severity levels for audit entries."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEntry(BaseModel):
    """
    An audit log entry.

    Describes one privilege decision or one change to a policy graph.
    """

    id: UUID = Field(default_factory=uuid4, description="Unique entry ID")
    timestamp: datetime = Field(default_factory=_utcnow)

    # Action details
    action: AuditAction = Field(..., description="Type of action")
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Severity level"
    )
    success: bool = Field(default=True, description="Whether access was granted or the change applied")

    # Scope
    policy_machine_uuid: Optional[str] = Field(default=None, description="Policy machine UUID")

    # Subject (who)
    subject_id: Optional[str] = Field(
        default=None,
        description="User or user attribute identifier"
    )
    operation: Optional[str] = Field(default=None, description="Operation identifier")

    # Resource (what)
    resource_type: Optional[str] = Field(
        default=None,
        description="Policy element type or relation kind"
    )
    resource_id: Optional[str] = Field(default=None, description="Element identifier")

    # Details
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event details"
    )
    error_message: Optional[str] = Field(
        default=None,
        description="Error message if the action failed"
    )

    def to_log_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "audit_id": str(self.id),
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "success": self.success,
            "policy_machine_uuid": self.policy_machine_uuid,
            "subject_id": self.subject_id,
            "operation": self.operation,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details,
            "error": self.error_message,
        }


class AuditLog:
    """
    In-memory audit log with optional file persistence.

    Provides query capabilities for audit entries.
    """

    def __init__(
        self,
        max_entries: int = 10000,
        storage_path: Optional[Path] = None
    ):
        """
        Initialize the audit log.

        Args:
            max_entries: Maximum entries to keep in memory
            storage_path: Optional JSON-lines file receiving every entry
        """
        self._entries: list[AuditEntry] = []
        self._max_entries = max_entries
        self._storage_path = Path(storage_path) if storage_path else None

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, entry: AuditEntry) -> AuditEntry:
        """Add an entry to the log."""
        self._entries.append(entry)

        if len(self._entries) > self._max_entries:
            self._entries = self._entries[-self._max_entries:]

        if self._storage_path:
            self._append_to_file(entry)

        return entry

    def _append_to_file(self, entry: AuditEntry) -> None:
        """Append entry to log file."""
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self._storage_path, "a") as f:
            f.write(json.dumps(entry.model_dump(mode="json"), default=str) + "\n")

    def query(
        self,
        action: Optional[AuditAction] = None,
        policy_machine_uuid: Optional[str] = None,
        subject_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        success: Optional[bool] = None,
        limit: int = 100
    ) -> list[AuditEntry]:
        """
        Query audit entries with filters.

        Args:
            action: Filter by action type
            policy_machine_uuid: Filter by policy machine
            subject_id: Filter by user or user attribute identifier
            resource_id: Filter by element identifier
            start_time: Filter by start time
            end_time: Filter by end time
            success: Filter by success status
            limit: Maximum entries to return

        Returns:
            Matching entries, most recent first
        """
        results = []

        for entry in reversed(self._entries):
            if len(results) >= limit:
                break

            if action and entry.action != action:
                continue
            if policy_machine_uuid and entry.policy_machine_uuid != policy_machine_uuid:
                continue
            if subject_id and entry.subject_id != subject_id:
                continue
            if resource_id and entry.resource_id != resource_id:
                continue
            if start_time and entry.timestamp < start_time:
                continue
            if end_time and entry.timestamp > end_time:
                continue
            if success is not None and entry.success != success:
                continue

            results.append(entry)

        return results

    def get_denied_privileges(
        self,
        subject_id: Optional[str] = None,
        limit: int = 50
    ) -> list[AuditEntry]:
        """Get privilege checks that were denied."""
        return self.query(
            action=AuditAction.ACCESS_DENIED,
            subject_id=subject_id,
            limit=limit
        )


class AuditLogger:
    """
    High-level audit logging interface.

    Provides convenient methods for the events a policy machine records.
    """

    def __init__(
        self,
        audit_log: Optional[AuditLog] = None,
        enable_console: bool = True
    ):
        """
        Initialize the audit logger.

        Args:
            audit_log: Optional AuditLog instance for storage
            enable_console: Whether to also emit entries through structlog
        """
        self.audit_log = audit_log or AuditLog()
        self.enable_console = enable_console

        if enable_console:
            self._logger = structlog.get_logger("policy_machine.audit")

    def _log_entry(self, entry: AuditEntry) -> AuditEntry:
        """Log an entry to all configured destinations."""
        self.audit_log.add(entry)

        if self.enable_console:
            log_method = getattr(self._logger, entry.severity.value, self._logger.info)
            log_method(
                entry.action.value,
                **entry.to_log_dict()
            )

        return entry

    def log_privilege_check(
        self,
        policy_machine_uuid: str,
        subject_id: str,
        operation: str,
        resource_type: str,
        resource_id: str,
        allowed: bool,
        **kwargs
    ) -> AuditEntry:
        """Log a privilege decision."""
        entry = AuditEntry(
            action=AuditAction.ACCESS_GRANTED if allowed else AuditAction.ACCESS_DENIED,
            severity=AuditSeverity.INFO if allowed else AuditSeverity.WARNING,
            success=allowed,
            policy_machine_uuid=policy_machine_uuid,
            subject_id=subject_id,
            operation=operation,
            resource_type=resource_type,
            resource_id=resource_id,
            details=kwargs,
        )
        return self._log_entry(entry)

    def log_element_created(
        self,
        policy_machine_uuid: str,
        pe_type: str,
        unique_identifier: str,
        **kwargs
    ) -> AuditEntry:
        """Log the creation of a policy element."""
        entry = AuditEntry(
            action=AuditAction.ELEMENT_CREATED,
            policy_machine_uuid=policy_machine_uuid,
            resource_type=pe_type,
            resource_id=unique_identifier,
            details=kwargs,
        )
        return self._log_entry(entry)

    def log_relation_change(
        self,
        action: AuditAction,
        policy_machine_uuid: str,
        src_id: str,
        dst_id: str,
        applied: bool = True,
        **kwargs
    ) -> AuditEntry:
        """Log an added or removed assignment, link or association."""
        entry = AuditEntry(
            action=action,
            severity=AuditSeverity.WARNING,  # Graph changes alter privileges
            success=applied,
            policy_machine_uuid=policy_machine_uuid,
            resource_type=action.value.rsplit("_", 1)[0],
            resource_id=src_id,
            details={"dst": dst_id, **kwargs},
        )
        return self._log_entry(entry)

    def log_bulk_flush(
        self,
        policy_machine_uuid: str,
        summary: dict[str, int],
    ) -> AuditEntry:
        """Log a mutation buffer flush."""
        entry = AuditEntry(
            action=AuditAction.BULK_FLUSHED,
            policy_machine_uuid=policy_machine_uuid,
            details=dict(summary),
        )
        return self._log_entry(entry)

    def log_transaction_rollback(
        self,
        policy_machine_uuid: str,
        error: BaseException,
    ) -> AuditEntry:
        """Log a transaction rolled back by an exception."""
        entry = AuditEntry(
            action=AuditAction.TRANSACTION_ROLLED_BACK,
            severity=AuditSeverity.ERROR,
            success=False,
            policy_machine_uuid=policy_machine_uuid,
            error_message=str(error),
            details={"error_type": type(error).__name__},
        )
        return self._log_entry(entry)
