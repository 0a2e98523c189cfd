"""
Escalation action

Walks an escalation chain one level per invocation: resolve who should hear
about the pattern next, notify them, and remember how far the chain has got
for this (action, pattern) pair. Progress is persisted with an optimistic
version token and only moves forward; a claimed level whose notice could not
be written is released again.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from ..config import EscalationConfig
from ..errors import NotFoundError, StorageError, VersionConflictError
from ..executors import ActionExecutor
from ..models import (
    ActionExecutionResult,
    AutomatedAction,
    Escalation,
    EscalationActionConfig,
    EscalationHistoryEntry,
    EscalationLevel,
    EscalationState,
    EscalationStatus,
    EscalationTarget,
    ExecutionChange,
    ExecutionContext,
    Notification,
    Person,
    TargetType,
    ValidationResult,
    new_id,
    utcnow,
)
from ..observability.metrics import get_metrics
from ..rendering import TemplateManager
from ..storage.base import StorageBackend

logger = logging.getLogger(__name__)

NOTICE_TEMPLATE = "escalation_notice:v1"
MANAGER_ROLE = "manager"


class EscalationScheduler(Protocol):
    """Hook for delayed re-invocation of an escalation action"""

    async def schedule(
        self, action_id: str, pattern_id: str, delay_minutes: int
    ) -> None: ...


class LoggingEscalationScheduler:
    """Default scheduler: records the decision, never re-invokes"""

    def __init__(self):
        self.scheduled: list[tuple[str, str, int]] = []

    async def schedule(self, action_id: str, pattern_id: str, delay_minutes: int) -> None:
        self.scheduled.append((action_id, pattern_id, delay_minutes))
        logger.info(
            f"Auto-escalation for {action_id}:{pattern_id} due in {delay_minutes} min "
            "(no job queue configured)"
        )


def validate_escalation_config(config: dict[str, Any]) -> ValidationResult:
    """Check an escalation action config before anything is sent"""
    errors: list[str] = []

    if config.get("type", "escalation") != "escalation":
        errors.append("Invalid action type for escalation action")

    chain = config.get("escalation_chain")
    if not chain:
        errors.append("Escalation chain is required and must have at least one level")
        return ValidationResult.from_errors(errors)

    valid_targets = {t.value for t in TargetType}
    seen: set[Any] = set()
    for entry in chain:
        if not isinstance(entry, dict):
            errors.append(f"Escalation level must be a mapping, got {type(entry).__name__}")
            continue

        level = entry.get("level")
        if not isinstance(level, int) or isinstance(level, bool):
            errors.append(f"Escalation level must be an integer: {level!r}")
        if level in seen:
            errors.append(f"Duplicate escalation level: {level}")
        seen.add(level)

        target_type = entry.get("target_type")
        if target_type not in valid_targets:
            errors.append(f"Invalid target type at level {level}")
        if target_type == TargetType.PERSON.value and not entry.get("target_id"):
            errors.append(f"Person target requires target_id at level {level}")
        if target_type == TargetType.ROLE.value and not entry.get("role"):
            errors.append(f"Role target requires role at level {level}")

        wait = entry.get("wait_minutes", 0)
        if not isinstance(wait, (int, float)) or wait < 0:
            errors.append(f"Wait minutes cannot be negative at level {level}")

    return ValidationResult.from_errors(errors)


class EscalationExecutor(ActionExecutor):
    """Multi-level, availability-aware escalation chains"""

    action_type = "escalation"
    can_rollback = True

    def __init__(
        self,
        storage: StorageBackend,
        config: Optional[EscalationConfig] = None,
        scheduler: Optional[EscalationScheduler] = None,
        templates: Optional[TemplateManager] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.config = config or EscalationConfig()
        self.scheduler = scheduler or LoggingEscalationScheduler()
        self.templates = templates or TemplateManager()
        self.clock = clock

    def validate(self, config: dict[str, Any]) -> ValidationResult:
        return validate_escalation_config(config)

    async def execute(
        self, action: AutomatedAction, context: ExecutionContext
    ) -> ActionExecutionResult:
        config = EscalationActionConfig.model_validate(action.action_config)
        pattern_id = context.pattern.id if context.pattern else context.execution_id

        state = await self.storage.get_escalation_state(action.id, pattern_id)
        current_level = state.current_level if state else 0

        chain = sorted(config.escalation_chain, key=lambda lvl: lvl.level)
        next_index = next(
            (i for i, lvl in enumerate(chain) if lvl.level > current_level), None
        )
        if next_index is None:
            logger.debug(f"Escalation {action.id}:{pattern_id} already at highest level")
            return ActionExecutionResult(
                success=True,
                affected_entities=list(state.escalated_to) if state else [],
                metrics={"already_at_highest_level": 1},
            )

        level = chain[next_index]
        target = await self.resolve_target(
            level, context.organization_id, config.skip_unavailable
        )

        # Look ahead exactly one level; the fallback does not require availability
        if target is None and config.skip_unavailable and next_index + 1 < len(chain):
            fallback = chain[next_index + 1]
            target = await self.resolve_target(fallback, context.organization_id, False)
            if target is not None:
                logger.info(
                    f"Level {level.level} unavailable, escalating to level {fallback.level}"
                )
                level = fallback

        if target is None:
            return ActionExecutionResult(
                success=False,
                error_message=f"No available target for escalation level {level.level}",
            )

        if context.cancelled:
            return ActionExecutionResult(
                success=False, error_message="Escalation cancelled before notifying"
            )

        return await self._escalate(action, context, config, level, target, pattern_id, state)

    async def _escalate(
        self,
        action: AutomatedAction,
        context: ExecutionContext,
        config: EscalationActionConfig,
        level: EscalationLevel,
        target: EscalationTarget,
        pattern_id: str,
        state: Optional[EscalationState],
    ) -> ActionExecutionResult:
        now = self.clock()
        escalation_id = new_id("esc")
        expected_version = state.version if state else 0
        message = self.build_message(context, config, level)

        claimed = EscalationState(
            action_id=action.id,
            pattern_id=pattern_id,
            current_level=level.level,
            escalated_at=now,
            escalated_to=[*(state.escalated_to if state else []), target.id],
            history=[
                *(state.history if state else []),
                EscalationHistoryEntry(
                    level=level.level,
                    target_id=target.id,
                    target_name=target.name,
                    escalation_id=escalation_id,
                    escalated_at=now,
                ),
            ],
        )
        try:
            claimed = await self.storage.save_escalation_state(claimed, expected_version)
        except VersionConflictError as e:
            logger.warning(f"Lost escalation race for {action.id}:{pattern_id}: {e}")
            return ActionExecutionResult(
                success=False,
                error_message=(
                    f"Escalation state for pattern {pattern_id} changed concurrently"
                ),
            )

        try:
            notification = await self.storage.save_notification(
                Notification(
                    organization_id=context.organization_id,
                    recipient_id=target.id,
                    type="escalation",
                    title=f"Escalation Level {level.level}",
                    message=message,
                    priority=(
                        "high" if level.level >= self.config.high_priority_level else "normal"
                    ),
                    created_at=now,
                )
            )
            record = await self.storage.save_escalation(
                Escalation(
                    id=escalation_id,
                    action_id=action.id,
                    organization_id=context.organization_id,
                    execution_id=context.execution_id,
                    pattern_id=pattern_id,
                    level=level.level,
                    target_type=level.target_type,
                    target_id=target.id,
                    reason=(
                        context.pattern.description if context.pattern else "Manual escalation"
                    ),
                    created_at=now,
                )
            )
        except Exception as e:
            logger.error(f"Escalation {action.id}:{pattern_id} not delivered: {e}")
            await self._release_claim(claimed, state)
            return ActionExecutionResult(
                success=False,
                error_message=f"Failed to notify level {level.level} target: {e}",
            )

        if level.wait_minutes > 0:
            await self.scheduler.schedule(action.id, pattern_id, level.wait_minutes)

        metrics = get_metrics()
        if metrics:
            metrics.record_escalation(level.level)

        logger.info(
            f"Escalated {action.id}:{pattern_id} to level {level.level} "
            f"({target.name}, {target.id})"
        )

        return ActionExecutionResult(
            success=True,
            affected_entities=[target.id],
            changes=[
                ExecutionChange(
                    entity_type="escalation",
                    entity_id=record.id,
                    change_type="create",
                    after={
                        "level": level.level,
                        "target_id": target.id,
                        "target_name": target.name,
                    },
                )
            ],
            metrics={"escalation_level": float(level.level), "notifications_sent": 1.0},
            rollback_data={
                "escalation_record_id": record.id,
                "notification_id": notification.id,
                "target_id": target.id,
            },
        )

    async def _release_claim(
        self, claimed: EscalationState, previous: Optional[EscalationState]
    ) -> None:
        """Put back the state that was in place before `claimed` was written"""
        restored = previous or EscalationState(
            action_id=claimed.action_id, pattern_id=claimed.pattern_id
        )
        try:
            await self.storage.save_escalation_state(restored, claimed.version)
        except (VersionConflictError, StorageError) as e:
            logger.error(
                f"Could not release level {claimed.current_level} for "
                f"{claimed.action_id}:{claimed.pattern_id}: {e}"
            )

    def build_message(
        self,
        context: ExecutionContext,
        config: EscalationActionConfig,
        level: EscalationLevel,
    ) -> str:
        pattern = context.pattern
        if pattern is None:
            return self.templates.render(
                NOTICE_TEMPLATE,
                level=level.level,
                pattern=None,
                affected_entities=[],
                suggested_actions=[],
            )
        return self.templates.render(
            NOTICE_TEMPLATE,
            level=level.level,
            pattern={
                "description": pattern.description,
                "severity": pattern.severity.value,
                "first_detected_at": pattern.first_detected_at.isoformat(),
                "occurrences": pattern.occurrences,
            },
            affected_entities=pattern.affected_entities if config.include_context else [],
            suggested_actions=pattern.suggested_actions[: self.config.max_suggested_actions],
        )

    # ------------------------------------------------------------------
    # Target resolution
    # ------------------------------------------------------------------

    async def resolve_target(
        self, level: EscalationLevel, organization_id: str, require_available: bool
    ) -> Optional[EscalationTarget]:
        if level.target_type == TargetType.PERSON:
            return await self._resolve_person(
                level.target_id, organization_id, require_available
            )
        if level.target_type == TargetType.ROLE:
            return await self._resolve_role(level.role, organization_id, require_available)
        if level.target_type == TargetType.MANAGER:
            return await self._resolve_manager(
                level.target_id, organization_id, require_available
            )
        return None

    @staticmethod
    def _to_target(person: Person) -> EscalationTarget:
        return EscalationTarget(
            id=person.id,
            name=person.name,
            email=person.email,
            is_available=person.is_available,
        )

    async def _resolve_person(
        self, person_id: Optional[str], organization_id: str, require_available: bool
    ) -> Optional[EscalationTarget]:
        if not person_id:
            return None
        person = await self.storage.get_person(person_id)
        if person is None or person.organization_id != organization_id:
            return None
        if require_available and not person.is_available:
            return None
        return self._to_target(person)

    async def _resolve_role(
        self, role: Optional[str], organization_id: str, require_available: bool
    ) -> Optional[EscalationTarget]:
        if not role:
            return None
        candidates = [
            p
            for p in await self.storage.list_persons(organization_id, role=role)
            if p.is_active and not (require_available and p.is_on_leave)
        ]
        if not candidates:
            return None
        best = min(candidates, key=lambda p: (p.is_on_leave, p.current_workload, p.id))
        return self._to_target(best)

    async def _resolve_manager(
        self, person_id: Optional[str], organization_id: str, require_available: bool
    ) -> Optional[EscalationTarget]:
        person = await self.storage.get_person(person_id) if person_id else None
        if person is None or person.organization_id != organization_id or not person.manager_id:
            return await self._resolve_role(MANAGER_ROLE, organization_id, require_available)
        return await self._resolve_person(
            person.manager_id, organization_id, require_available
        )

    # ------------------------------------------------------------------
    # Compensation and state
    # ------------------------------------------------------------------

    async def rollback(
        self,
        action: AutomatedAction,
        execution_id: str,
        rollback_data: dict[str, Any],
    ) -> bool:
        """Cancel the escalation record and tell its target; the level stays"""
        escalation_id = rollback_data.get("escalation_record_id")
        record = await self.storage.get_escalation(escalation_id) if escalation_id else None
        if record is None:
            logger.error(f"No escalation record to roll back for {execution_id}")
            return False

        if record.status != EscalationStatus.CANCELLED:
            await self.storage.transition_escalation(
                record.id,
                record.status,
                EscalationStatus.CANCELLED,
                cancelled_at=self.clock(),
            )

        target_id = rollback_data.get("target_id") or record.target_id
        if await self.storage.get_person(target_id) is not None:
            await self.storage.save_notification(
                Notification(
                    organization_id=action.organization_id,
                    recipient_id=target_id,
                    type="escalation_cancelled",
                    title="Escalation Cancelled",
                    message="A previous escalation has been cancelled.",
                    created_at=self.clock(),
                )
            )

        logger.info(f"Escalation {record.id} rolled back for {execution_id}")
        return True

    async def acknowledge_escalation(
        self, escalation_id: str, acknowledged_by: str, max_attempts: int = 3
    ) -> bool:
        """
        Mark an escalation acknowledged

        Returns:
            False if the escalation is no longer pending
        """
        record = await self.storage.get_escalation(escalation_id)
        if record is None:
            raise NotFoundError("Escalation", escalation_id)
        if record.status != EscalationStatus.PENDING:
            logger.warning(
                f"Escalation {escalation_id} is {record.status.value}, not acknowledging"
            )
            return False

        now = self.clock()
        await self.storage.transition_escalation(
            escalation_id,
            EscalationStatus.PENDING,
            EscalationStatus.ACKNOWLEDGED,
            acknowledged_by=acknowledged_by,
            acknowledged_at=now,
        )

        if record.pattern_id:
            await self._mark_history_acknowledged(record, now, max_attempts)

        logger.info(f"Escalation {escalation_id} acknowledged by {acknowledged_by}")
        return True

    async def _mark_history_acknowledged(
        self, record: Escalation, at: datetime, max_attempts: int
    ) -> None:
        for _ in range(max_attempts):
            state = await self.storage.get_escalation_state(
                record.action_id, record.pattern_id
            )
            if state is None:
                return
            history = [
                entry.model_copy(update={"acknowledged": True, "acknowledged_at": at})
                if entry.escalation_id == record.id
                else entry
                for entry in state.history
            ]
            try:
                await self.storage.save_escalation_state(
                    state.model_copy(update={"history": history}), state.version
                )
                return
            except VersionConflictError:
                continue
        raise VersionConflictError(
            f"Could not record acknowledgement of {record.id} after {max_attempts} attempts"
        )

    async def get_escalation_level(self, action_id: str, pattern_id: str) -> int:
        state = await self.storage.get_escalation_state(action_id, pattern_id)
        return state.current_level if state else 0

    async def reset_escalation_state(self, action_id: str, pattern_id: str) -> None:
        """Forget escalation progress, e.g. once the pattern is resolved"""
        await self.storage.delete_escalation_state(action_id, pattern_id)
        logger.debug(f"Escalation state reset for {action_id}:{pattern_id}")
