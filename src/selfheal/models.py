"""
Core data models for selfheal

Defines detected patterns, operator-configured actions, executions, escalation
state and rollback requests using Pydantic for validation and serialization.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a prefixed random identifier (e.g. 'exec-3f2a...')"""
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


class Severity(str, Enum):
    """Pattern severity, ordered low < medium < high < critical"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ExecutionStatus(str, Enum):
    """States of the action execution lifecycle"""

    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


# Legal edges of the execution state machine
EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING_APPROVAL: frozenset(
        {
            ExecutionStatus.EXECUTING,
            ExecutionStatus.APPROVED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.APPROVED: frozenset({ExecutionStatus.EXECUTING}),
    ExecutionStatus.EXECUTING: frozenset(
        {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.COMPLETED: frozenset({ExecutionStatus.ROLLED_BACK}),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
    ExecutionStatus.ROLLED_BACK: frozenset(),
}


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    """Check whether the state machine allows current -> target"""
    return ExecutionStatus(target) in EXECUTION_TRANSITIONS[ExecutionStatus(current)]


class TargetType(str, Enum):
    PERSON = "person"
    ROLE = "role"
    MANAGER = "manager"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    CANCELLED = "cancelled"


class RollbackRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# Patterns and actions
# =============================================================================


class AffectedEntity(BaseModel):
    """An entity (person, process, integration...) touched by a pattern"""

    type: str
    id: str
    name: str = ""
    impact: str = "direct"

    def sort_key(self) -> tuple[str, str]:
        return (self.type, self.id)


class DetectedPattern(BaseModel):
    """Normalized description of an operational anomaly found by a detector"""

    id: str = Field(default_factory=lambda: new_id("pattern"))
    type: str
    description: str
    severity: Severity
    affected_entities: list[AffectedEntity] = Field(default_factory=list)
    occurrences: int = Field(default=1, ge=1)
    first_detected_at: datetime = Field(default_factory=utcnow)
    last_detected_at: datetime = Field(default_factory=utcnow)
    suggested_actions: list[str] = Field(default_factory=list)
    matched_actions: list[str] = Field(default_factory=list)

    def group_key(self) -> tuple[str, tuple[tuple[str, str], ...]]:
        """Identity of the underlying condition: type plus sorted entities"""
        return (
            self.type,
            tuple(sorted({entity.sort_key() for entity in self.affected_entities})),
        )


class TriggerConfig(BaseModel):
    """When an automated action fires"""

    model_config = ConfigDict(extra="allow")

    type: str = "pattern"
    pattern_type: Optional[str] = None


class AutomatedAction(BaseModel):
    """Operator-authored remedial action bound to a trigger"""

    id: str = Field(default_factory=lambda: new_id("action"))
    organization_id: str
    name: str = ""
    action_type: str
    action_config: dict[str, Any] = Field(default_factory=dict)
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    requires_approval: bool = False
    is_active: bool = True
    success_count: int = 0
    failure_count: int = 0
    last_triggered_at: Optional[datetime] = None

    def matches_pattern(self, pattern: DetectedPattern) -> bool:
        return (
            self.trigger_config.type == "pattern"
            and self.trigger_config.pattern_type == pattern.type
        )


# =============================================================================
# Execution
# =============================================================================


class ExecutionChange(BaseModel):
    """A single entity mutation performed by an action"""

    entity_type: str
    entity_id: str
    change_type: str
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None


class ActionExecutionResult(BaseModel):
    """What an executor plugin reports back"""

    success: bool
    affected_entities: list[str] = Field(default_factory=list)
    changes: list[ExecutionChange] = Field(default_factory=list)
    metrics: dict[str, float] = Field(default_factory=dict)
    error_message: Optional[str] = None
    rollback_data: Optional[dict[str, Any]] = None


class ActionExecution(BaseModel):
    """One stateful attempt to run an action"""

    id: str = Field(default_factory=lambda: new_id("exec"))
    action_id: str
    organization_id: str
    trigger_reason: str
    status: ExecutionStatus = ExecutionStatus.PENDING_APPROVAL
    pattern: Optional[DetectedPattern] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[ActionExecutionResult] = None
    error_message: Optional[str] = None
    rollback_data: Optional[dict[str, Any]] = None
    was_rolled_back: bool = False
    rolled_back_at: Optional[datetime] = None
    rolled_back_by: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0


@dataclass
class ExecutionContext:
    """
    Runtime context handed to an executor plugin

    `cancellation` is set when the execution deadline passes. Plugins doing
    long-running work must check it (or await it) and stop; the core does not
    forcibly interrupt them.
    """

    execution_id: str
    organization_id: str
    triggered_by: str = "manual"
    pattern: Optional[DetectedPattern] = None
    event_data: dict[str, Any] = field(default_factory=dict)
    initiated_by: Optional[str] = None
    cancellation: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancellation.is_set()


class ExecutionOptions(BaseModel):
    """Per-call execution switches"""

    bypass_approval: bool = False
    dry_run: bool = False
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: list[str]) -> "ValidationResult":
        return cls(valid=not errors, errors=errors)


class ExecutionStatistics(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_action_type: dict[str, int] = Field(default_factory=dict)
    success_rate: float = 0.0
    avg_execution_time_ms: float = 0.0


# =============================================================================
# Escalation
# =============================================================================


class EscalationLevel(BaseModel):
    """One rung of an escalation chain"""

    level: int
    target_type: str
    target_id: Optional[str] = None
    role: Optional[str] = None
    wait_minutes: int = 0


class EscalationActionConfig(BaseModel):
    type: str = "escalation"
    escalation_chain: list[EscalationLevel] = Field(default_factory=list)
    skip_unavailable: bool = False
    include_context: bool = True


class EscalationTarget(BaseModel):
    """Resolved recipient of an escalation notice"""

    id: str
    name: str
    email: Optional[str] = None
    is_available: bool = True


class EscalationHistoryEntry(BaseModel):
    level: int
    target_id: str
    target_name: str
    escalation_id: str
    escalated_at: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None


class EscalationState(BaseModel):
    """Escalation progress for one (action, pattern) pair"""

    action_id: str
    pattern_id: str
    current_level: int = 0
    escalated_at: Optional[datetime] = None
    escalated_to: list[str] = Field(default_factory=list)
    history: list[EscalationHistoryEntry] = Field(default_factory=list)
    version: int = 0


class Escalation(BaseModel):
    """Persisted record of a single escalation notice"""

    id: str = Field(default_factory=lambda: new_id("esc"))
    action_id: str
    organization_id: str
    execution_id: Optional[str] = None
    pattern_id: Optional[str] = None
    level: int
    target_type: str
    target_id: str
    reason: str
    status: EscalationStatus = EscalationStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class Person(BaseModel):
    """Directory entry used to resolve escalation targets"""

    id: str
    organization_id: str
    name: str
    email: Optional[str] = None
    role: Optional[str] = None
    manager_id: Optional[str] = None
    is_active: bool = True
    is_on_leave: bool = False
    current_workload: float = 0.0

    @property
    def is_available(self) -> bool:
        return self.is_active and not self.is_on_leave


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: new_id("notif"))
    organization_id: str
    recipient_id: str
    type: str
    title: str
    message: str
    priority: str = "normal"
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Audit and rollback
# =============================================================================


class AuditEntry(BaseModel):
    id: str = Field(default_factory=lambda: new_id("audit"))
    event_type: str
    organization_id: str
    entity_type: str
    entity_id: str
    action: str
    details: dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    severity: str = "info"
    timestamp: datetime = Field(default_factory=utcnow)


class RollbackRequest(BaseModel):
    """Operator request to compensate a completed execution"""

    id: str = Field(default_factory=lambda: new_id("rbreq"))
    execution_id: str
    organization_id: str
    requested_by: str
    reason: Optional[str] = None
    status: RollbackRequestStatus = RollbackRequestStatus.PENDING
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class RollbackEligibility(BaseModel):
    eligible: bool
    reason: Optional[str] = None
    hours_since_completion: Optional[float] = None
    hours_remaining: Optional[float] = None


class RollbackCandidate(BaseModel):
    """A completed execution that can still be rolled back, with its deadline"""

    execution: ActionExecution
    deadline: datetime
    hours_remaining: float


class RollbackOutcome(BaseModel):
    """Result of request_rollback: either executed or parked for approval"""

    status: str
    execution: Optional[ActionExecution] = None
    request: Optional[RollbackRequest] = None


class DetectionResult(BaseModel):
    patterns: list[DetectedPattern] = Field(default_factory=list)
    detectors_run: list[str] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
    duration_ms: float = 0.0


class CycleReport(BaseModel):
    """Outcome of one detect -> match -> execute pass"""

    organization_id: str
    patterns: list[DetectedPattern] = Field(default_factory=list)
    matches: dict[str, list[str]] = Field(default_factory=dict)
    executions: list[ActionExecution] = Field(default_factory=list)
    errors: dict[str, str] = Field(default_factory=dict)
