"""
Audit trail for self-healing operations

Every detection, execution, approval and rollback step is recorded as an
AuditEntry. Writes are best-effort: a storage failure is logged and never
masks the outcome of the operation being audited.
"""

import csv
import io
import json
import logging
from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional

from .models import (
    ActionExecution,
    ActionExecutionResult,
    AuditEntry,
    AutomatedAction,
    DetectedPattern,
    Severity,
    utcnow,
)
from .safety import SafetyCheckResult
from .storage.base import StorageBackend

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    PATTERN_DETECTED = "pattern_detected"
    ACTION_TRIGGERED = "action_triggered"
    ACTION_EXECUTED = "action_executed"
    ACTION_COMPLETED = "action_completed"
    ACTION_FAILED = "action_failed"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"
    ROLLBACK_REQUESTED = "rollback_requested"
    ROLLBACK_COMPLETED = "rollback_completed"
    ROLLBACK_REJECTED = "rollback_rejected"
    SYSTEM_EVENT = "system_event"


def map_pattern_severity(severity: Severity) -> str:
    """Audit severity for a pattern severity"""
    severity = Severity(severity)
    if severity in (Severity.CRITICAL, Severity.HIGH):
        return "error"
    if severity == Severity.MEDIUM:
        return "warning"
    return "info"


CSV_HEADERS = [
    "Timestamp",
    "Event Type",
    "Entity Type",
    "Entity ID",
    "Action",
    "User",
    "Severity",
    "Details",
]


class AuditTrail:
    """Audit log writer and query helper over a storage backend"""

    def __init__(
        self,
        storage: StorageBackend,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.clock = clock

    async def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        action: str,
        details: dict[str, Any],
        organization_id: str,
        user_id: Optional[str] = None,
        severity: str = "info",
    ) -> Optional[AuditEntry]:
        """
        Record an audit event

        Returns:
            The stored entry, or None if it could not be written
        """
        entry = AuditEntry(
            event_type=AuditEventType(event_type).value,
            organization_id=organization_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            details=details,
            user_id=user_id,
            severity=severity,
            timestamp=self.clock(),
        )
        try:
            await self.storage.append_audit(entry)
        except Exception as e:
            logger.error(f"Failed to write audit entry '{action}' for {entity_id}: {e}")
            return None

        logger.debug(f"Audit: {action} ({entry.event_type} {entity_type}/{entity_id})")
        return entry

    # ------------------------------------------------------------------
    # Specialized events
    # ------------------------------------------------------------------

    async def log_pattern_detected(
        self, pattern: DetectedPattern, organization_id: str
    ) -> Optional[AuditEntry]:
        return await self.log_event(
            AuditEventType.PATTERN_DETECTED,
            "pattern",
            pattern.id,
            f"Pattern detected: {pattern.type}",
            {
                "pattern_type": pattern.type,
                "description": pattern.description,
                "severity": pattern.severity.value,
                "occurrences": pattern.occurrences,
                "affected_entities": [
                    {"type": e.type, "id": e.id, "name": e.name}
                    for e in pattern.affected_entities
                ],
                "suggested_actions": pattern.suggested_actions,
            },
            organization_id,
            severity=map_pattern_severity(pattern.severity),
        )

    async def log_action_triggered(
        self,
        action: AutomatedAction,
        triggered_by: Optional[str],
        pattern: Optional[DetectedPattern] = None,
    ) -> Optional[AuditEntry]:
        return await self.log_event(
            AuditEventType.ACTION_TRIGGERED,
            "automated_action",
            action.id,
            f"Action triggered: {action.name or action.id}",
            {
                "action_type": action.action_type,
                "trigger_type": action.trigger_config.type,
                "pattern_id": pattern.id if pattern else None,
                "pattern_type": pattern.type if pattern else None,
                "requires_approval": action.requires_approval,
            },
            action.organization_id,
            user_id=triggered_by,
        )

    async def log_action_executed(
        self, execution: ActionExecution, action: AutomatedAction
    ) -> Optional[AuditEntry]:
        return await self.log_event(
            AuditEventType.ACTION_EXECUTED,
            "action_execution",
            execution.id,
            f"Action execution started: {action.name or action.id}",
            {
                "action_id": action.id,
                "action_type": action.action_type,
                "trigger_reason": execution.trigger_reason,
            },
            execution.organization_id,
        )

    async def log_action_completed(
        self,
        execution: ActionExecution,
        action: AutomatedAction,
        result: ActionExecutionResult,
    ) -> Optional[AuditEntry]:
        return await self.log_event(
            AuditEventType.ACTION_COMPLETED,
            "action_execution",
            execution.id,
            f"Action completed: {action.name or action.id}",
            {
                "action_id": action.id,
                "action_type": action.action_type,
                "success": True,
                "affected_entities": result.affected_entities,
                "changes": [c.model_dump(mode="json") for c in result.changes],
                "metrics": result.metrics,
            },
            execution.organization_id,
        )

    async def log_action_failed(
        self, execution: ActionExecution, action: AutomatedAction, error: str
    ) -> Optional[AuditEntry]:
        return await self.log_event(
            AuditEventType.ACTION_FAILED,
            "action_execution",
            execution.id,
            f"Action failed: {action.name or action.id}",
            {
                "action_id": action.id,
                "action_type": action.action_type,
                "error": error,
            },
            execution.organization_id,
            severity="error",
        )

    async def log_approval_event(
        self,
        event_type: AuditEventType,
        execution_id: str,
        action_name: str,
        organization_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        labels = {
            AuditEventType.APPROVAL_REQUESTED: "Approval requested",
            AuditEventType.APPROVAL_GRANTED: "Approval granted",
            AuditEventType.APPROVAL_REJECTED: "Approval rejected",
        }
        event_type = AuditEventType(event_type)
        return await self.log_event(
            event_type,
            "action_execution",
            execution_id,
            f"{labels[event_type]}: {action_name}",
            {"reason": reason, "decided_by": user_id},
            organization_id,
            user_id=user_id,
        )

    async def log_rollback_event(
        self,
        event_type: AuditEventType,
        execution_id: str,
        organization_id: str,
        user_id: Optional[str],
        reason: Optional[str] = None,
        success: Optional[bool] = None,
        error: Optional[str] = None,
    ) -> Optional[AuditEntry]:
        labels = {
            AuditEventType.ROLLBACK_REQUESTED: "Rollback requested",
            AuditEventType.ROLLBACK_COMPLETED: "Rollback completed",
            AuditEventType.ROLLBACK_REJECTED: "Rollback rejected",
        }
        event_type = AuditEventType(event_type)
        return await self.log_event(
            event_type,
            "action_execution",
            execution_id,
            labels[event_type],
            {"reason": reason, "success": success, "error": error},
            organization_id,
            user_id=user_id,
            severity="error" if success is False else "info",
        )

    async def log_safety_result(
        self, action: AutomatedAction, result: SafetyCheckResult
    ) -> Optional[AuditEntry]:
        return await self.log_event(
            AuditEventType.SYSTEM_EVENT,
            "automated_action",
            action.id,
            "safety_pass" if result.passed else "safety_block",
            {
                "passed": result.passed,
                "check_count": len(result.checks),
                "failed_checks": [
                    {"name": c.name, "message": c.message}
                    for c in result.failed_checks()
                ],
                "warnings": result.warnings,
            },
            action.organization_id,
            severity="info" if result.passed else "warning",
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def query(
        self,
        organization_id: str,
        event_types: Optional[Iterable[AuditEventType]] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        user_id: Optional[str] = None,
        severity: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[AuditEntry], int]:
        """
        Filter the organization's audit log, newest first

        Returns:
            (page of entries, total matching entries)
        """
        wanted_types = (
            {AuditEventType(t).value for t in event_types} if event_types else None
        )
        entries = [
            e
            for e in await self.storage.list_audit(organization_id)
            if (wanted_types is None or e.event_type in wanted_types)
            and (entity_type is None or e.entity_type == entity_type)
            and (entity_id is None or e.entity_id == entity_id)
            and (user_id is None or e.user_id == user_id)
            and (severity is None or e.severity == severity)
            and (start is None or e.timestamp >= start)
            and (end is None or e.timestamp <= end)
        ]
        return entries[offset : offset + limit], len(entries)

    async def get_entity_trail(
        self,
        entity_type: str,
        entity_id: str,
        organization_id: str,
        limit: int = 50,
    ) -> list[AuditEntry]:
        entries, _ = await self.query(
            organization_id, entity_type=entity_type, entity_id=entity_id, limit=limit
        )
        return entries

    async def get_statistics(
        self, organization_id: str, days: int = 30
    ) -> dict[str, Any]:
        """Event counts by type, severity, entity type and day"""
        since = self.clock() - timedelta(days=days)
        entries = [
            e
            for e in await self.storage.list_audit(organization_id)
            if e.timestamp >= since
        ]

        daily = Counter(e.timestamp.date().isoformat() for e in entries)
        return {
            "total_events": len(entries),
            "by_event_type": dict(Counter(e.event_type for e in entries)),
            "by_severity": dict(Counter(e.severity for e in entries)),
            "by_entity_type": dict(Counter(e.entity_type for e in entries)),
            "daily_counts": [
                {"date": date, "count": count} for date, count in sorted(daily.items())
            ],
        }

    async def export_csv(self, organization_id: str, **filters: Any) -> str:
        """Render matching entries (up to 10000) as CSV"""
        filters.setdefault("limit", 10000)
        entries, _ = await self.query(organization_id, **filters)

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADERS)
        for entry in entries:
            writer.writerow(
                [
                    entry.timestamp.isoformat(),
                    entry.event_type,
                    entry.entity_type,
                    entry.entity_id,
                    entry.action,
                    entry.user_id or "system",
                    entry.severity,
                    json.dumps(entry.details, default=str, sort_keys=True),
                ]
            )
        return buffer.getvalue()
