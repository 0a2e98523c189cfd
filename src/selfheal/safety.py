"""
Pre-execution safety checks

Pattern-triggered actions are checked against the configured SafetyPolicy
before an execution is created. A failed check of severity `error` or
`critical` blocks the run; failed `warning` checks are reported only.
"""

import calendar
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .config import SafetyPolicy
from .models import AutomatedAction, DetectedPattern, ExecutionStatus, utcnow
from .observability.tracer import set_attribute, trace_async
from .storage.base import StorageBackend

logger = logging.getLogger(__name__)


class CheckSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


BLOCKING_SEVERITIES = frozenset({CheckSeverity.ERROR, CheckSeverity.CRITICAL})


class SafetyCheck(BaseModel):
    """Outcome of one guard rail"""

    name: str
    passed: bool
    message: str
    severity: CheckSeverity = CheckSeverity.INFO

    @property
    def blocking(self) -> bool:
        return not self.passed and self.severity in BLOCKING_SEVERITIES


class SafetyCheckResult(BaseModel):
    passed: bool
    checks: list[SafetyCheck] = Field(default_factory=list)
    blocked_reason: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_checks(cls, checks: list[SafetyCheck]) -> "SafetyCheckResult":
        blocking = [c for c in checks if c.blocking]
        return cls(
            passed=not blocking,
            checks=checks,
            blocked_reason=blocking[0].message if blocking else None,
            warnings=[
                c.message
                for c in checks
                if not c.passed and c.severity == CheckSeverity.WARNING
            ],
        )

    def failed_checks(self) -> list[SafetyCheck]:
        return [c for c in self.checks if not c.passed]


def _limit_check(
    name: str, passed: bool, ok: str, exceeded: str, severity: CheckSeverity
) -> SafetyCheck:
    return SafetyCheck(
        name=name,
        passed=passed,
        message=ok if passed else exceeded,
        severity=CheckSeverity.INFO if passed else severity,
    )


async def check_rate_limit(
    storage: StorageBackend, action: AutomatedAction, policy: SafetyPolicy, now: datetime
) -> SafetyCheck:
    recent = await storage.list_executions(
        action.organization_id, since=now - timedelta(hours=1)
    )
    limit = policy.max_actions_per_hour
    return _limit_check(
        "rate_limit",
        len(recent) < limit,
        f"{len(recent)}/{limit} executions in the last hour",
        f"Rate limit exceeded: {len(recent)} executions in the last hour (max {limit})",
        CheckSeverity.ERROR,
    )


async def check_concurrent_limit(
    storage: StorageBackend, action: AutomatedAction, policy: SafetyPolicy
) -> SafetyCheck:
    running = await storage.list_executions(
        action.organization_id, status=ExecutionStatus.EXECUTING
    )
    limit = policy.max_concurrent_executions
    return _limit_check(
        "concurrent_limit",
        len(running) < limit,
        f"{len(running)}/{limit} executions running",
        f"Too many concurrent executions: {len(running)} running (max {limit})",
        CheckSeverity.ERROR,
    )


def check_affected_entities(
    pattern: Optional[DetectedPattern], policy: SafetyPolicy
) -> SafetyCheck:
    if pattern is None:
        return SafetyCheck(
            name="affected_entities", passed=True, message="No pattern context"
        )
    count = len(pattern.affected_entities)
    limit = policy.max_affected_entities
    return _limit_check(
        "affected_entities",
        count <= limit,
        f"{count} affected entities",
        f"Pattern affects {count} entities (max {limit})",
        CheckSeverity.WARNING,
    )


async def check_cooldown(
    storage: StorageBackend, action: AutomatedAction, policy: SafetyPolicy, now: datetime
) -> SafetyCheck:
    minutes = policy.min_action_cooldown_minutes
    if minutes <= 0:
        return SafetyCheck(name="cooldown", passed=True, message="Cooldown disabled")

    recent = await storage.list_executions(
        action.organization_id,
        action_id=action.id,
        since=now - timedelta(minutes=minutes),
    )
    active = [
        e
        for e in recent
        if e.status in (ExecutionStatus.COMPLETED, ExecutionStatus.EXECUTING)
    ]
    return _limit_check(
        "cooldown",
        not active,
        "Cooldown period satisfied",
        f"Action was executed recently (cooldown: {minutes:g} minutes)",
        CheckSeverity.WARNING,
    )


def check_time_restriction(policy: SafetyPolicy, now: datetime) -> SafetyCheck:
    if now.hour in policy.blocked_hours:
        message = f"Execution blocked during hour {now.hour}"
    elif now.weekday() in policy.blocked_days:
        message = f"Execution blocked on {calendar.day_name[now.weekday()]}"
    else:
        return SafetyCheck(
            name="time_restriction", passed=True, message="No time restrictions apply"
        )
    return SafetyCheck(
        name="time_restriction",
        passed=False,
        message=message,
        severity=CheckSeverity.ERROR,
    )


def check_approval_required(
    action: AutomatedAction, pattern: Optional[DetectedPattern], policy: SafetyPolicy
) -> SafetyCheck:
    """Informational: never blocks, only reports why approval applies"""
    reasons = []
    if action.requires_approval:
        reasons.append("action requires approval")
    if action.action_type in policy.require_approval_types:
        reasons.append(f"type '{action.action_type}' requires approval")
    if pattern is not None and pattern.severity in policy.require_approval_severities:
        reasons.append(f"{pattern.severity.value} severity requires approval")

    if not reasons:
        return SafetyCheck(
            name="approval_required", passed=True, message="No approval required"
        )
    return SafetyCheck(
        name="approval_required",
        passed=True,
        message="Approval recommended: " + "; ".join(reasons),
        severity=CheckSeverity.WARNING,
    )


async def check_target_availability(
    storage: StorageBackend, action: AutomatedAction
) -> SafetyCheck:
    """Direct `target_id` / `target_role` in the action config must be reachable"""
    config = action.action_config
    target_id = config.get("target_id")
    role = config.get("target_role")

    if target_id:
        person = await storage.get_person(target_id)
        if person is None:
            message = f"Target {target_id} not found"
        elif not person.is_available:
            message = f"Target {person.name} is inactive or on leave"
        else:
            message = None
    elif role:
        persons = await storage.list_persons(action.organization_id, role=role)
        message = (
            None
            if any(p.is_available for p in persons)
            else f"No available person with role {role}"
        )
    else:
        return SafetyCheck(
            name="target_availability", passed=True, message="No direct target"
        )

    if message is None:
        return SafetyCheck(
            name="target_availability", passed=True, message="Target available"
        )
    return SafetyCheck(
        name="target_availability",
        passed=False,
        message=message,
        severity=CheckSeverity.WARNING,
    )


@trace_async("selfheal.safety_checks")
async def run_safety_checks(
    storage: StorageBackend,
    action: AutomatedAction,
    pattern: Optional[DetectedPattern] = None,
    policy: Optional[SafetyPolicy] = None,
    now: Optional[datetime] = None,
) -> SafetyCheckResult:
    """
    Run every guard rail of `policy` for one action

    Args:
        storage: Backend holding execution history and the person directory
        action: Action about to be executed
        pattern: Triggering pattern, if any
        policy: Policy to enforce (defaults apply when omitted)
        now: Evaluation time (UTC)

    Returns:
        SafetyCheckResult; `passed` is False when any error/critical check failed
    """
    policy = policy or SafetyPolicy()
    now = now or utcnow()
    if not policy.enabled:
        return SafetyCheckResult(passed=True)

    checks = [
        await check_rate_limit(storage, action, policy, now),
        await check_concurrent_limit(storage, action, policy),
        check_affected_entities(pattern, policy),
        await check_cooldown(storage, action, policy, now),
        check_time_restriction(policy, now),
        check_approval_required(action, pattern, policy),
        await check_target_availability(storage, action),
    ]
    result = SafetyCheckResult.from_checks(checks)
    set_attribute("selfheal.safety_passed", result.passed)

    if not result.passed:
        logger.warning(f"Safety checks blocked action {action.id}: {result.blocked_reason}")
    elif result.warnings:
        logger.info(f"Safety warnings for action {action.id}: {'; '.join(result.warnings)}")
    return result
