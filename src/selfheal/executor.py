"""
Action Executor Core

Owns the execution state machine:

    pending_approval -> executing -> completed | failed
    pending_approval -> approved -> executing -> completed | failed
    pending_approval -> cancelled
    completed -> rolled_back

Every status write is a compare-and-set in storage, so two callers racing on
the same execution cannot both win. Plugin errors never escape: they become
failed executions.
"""

import asyncio
import functools
import logging
import weakref
from collections import Counter
from collections.abc import Iterable
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Callable, Optional

from .audit import AuditEventType, AuditTrail
from .config import ExecutorConfig, SafetyPolicy
from .errors import (
    ActionValidationError,
    ConfigurationError,
    ExecutionTimeoutError,
    NotFoundError,
    RollbackFailedError,
    StateConflictError,
)
from .executors import ActionExecutor, ExecutorRegistry, executor_registry
from .matcher import PatternActionMatcher
from .models import (
    ActionExecution,
    ActionExecutionResult,
    AutomatedAction,
    DetectedPattern,
    ExecutionContext,
    ExecutionOptions,
    ExecutionStatistics,
    ExecutionStatus,
    new_id,
    utcnow,
)
from .observability.metrics import get_metrics
from .observability.tracer import add_event, set_attribute, trace_async
from .safety import run_safety_checks
from .storage.base import StorageBackend

logger = logging.getLogger(__name__)


class ActionExecutorService:
    """Runs automated actions through approval, timeout and rollback"""

    def __init__(
        self,
        storage: StorageBackend,
        registry: Optional[ExecutorRegistry] = None,
        audit: Optional[AuditTrail] = None,
        config: Optional[ExecutorConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        safety: Optional[SafetyPolicy] = None,
    ):
        self.storage = storage
        self.registry = registry or executor_registry
        self.audit = audit or AuditTrail(storage, clock=clock)
        self.config = config or ExecutorConfig()
        self.safety = safety or SafetyPolicy()
        self.clock = clock

        self._rollback_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        # Plugin runs that outlived their deadline; kept alive until they settle
        self._orphaned: set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    @trace_async("selfheal.execute_action")
    async def execute_action(
        self,
        action: AutomatedAction,
        context: ExecutionContext,
        options: Optional[ExecutionOptions] = None,
    ) -> ActionExecution:
        """
        Create an execution for `action` and run it unless approval is needed

        Returns:
            The execution in its resulting state: pending_approval when the
            action requires approval, otherwise completed or failed
        """
        options = options or ExecutionOptions()
        set_attribute("selfheal.execution_id", context.execution_id)
        set_attribute("selfheal.action_type", action.action_type)

        if await self.storage.get_execution(context.execution_id) is not None:
            raise StateConflictError(f"Execution already exists: {context.execution_id}")

        logger.info(
            f"Starting execution {context.execution_id} of action {action.id} "
            f"({action.action_type})"
        )

        execution = ActionExecution(
            id=context.execution_id,
            action_id=action.id,
            organization_id=context.organization_id,
            trigger_reason=(
                context.pattern.description if context.pattern else "Manual trigger"
            ),
            status=ExecutionStatus.PENDING_APPROVAL,
            pattern=context.pattern,
            created_at=self.clock(),
        )
        await self.storage.save_execution(execution)
        await self.audit.log_action_triggered(
            action, context.initiated_by, context.pattern
        )

        if action.requires_approval and not options.bypass_approval:
            logger.info(f"Execution {execution.id} requires approval")
            await self.audit.log_approval_event(
                AuditEventType.APPROVAL_REQUESTED,
                execution.id,
                action.name or action.id,
                execution.organization_id,
                user_id=context.initiated_by,
            )
            self._record_status(action.action_type, ExecutionStatus.PENDING_APPROVAL)
            return execution

        return await self._run(
            action, execution.id, context, options, ExecutionStatus.PENDING_APPROVAL
        )

    async def _run(
        self,
        action: AutomatedAction,
        execution_id: str,
        context: ExecutionContext,
        options: ExecutionOptions,
        expected: ExecutionStatus,
    ) -> ActionExecution:
        execution = await self.storage.transition_execution(
            execution_id, expected, ExecutionStatus.EXECUTING, executed_at=self.clock()
        )
        await self.audit.log_action_executed(execution, action)

        try:
            executor = self._resolve_executor(action)
            validation = executor.validate(action.action_config)
            if not validation.valid:
                raise ActionValidationError(validation.errors)

            if options.dry_run:
                logger.info(f"Dry run for {execution_id}, skipping plugin execution")
                result = ActionExecutionResult(success=True, metrics={"dry_run": 1.0})
            else:
                timeout = options.timeout_seconds or self.config.default_timeout_seconds
                result = await self._execute_with_timeout(
                    executor, action, context, timeout
                )
        except ExecutionTimeoutError as e:
            logger.error(f"Execution {execution_id} timed out: {e}")
            metrics = get_metrics()
            if metrics:
                metrics.record_timeout(action.action_type)
            return await self._fail(action, execution, str(e))
        except Exception as e:
            logger.error(f"Execution {execution_id} failed: {e}")
            return await self._fail(action, execution, str(e) or type(e).__name__)

        if result.success:
            return await self._complete(action, execution, result)
        return await self._fail(
            action, execution, result.error_message or "Unknown error", result
        )

    def _resolve_executor(self, action: AutomatedAction) -> ActionExecutor:
        executor = self.registry.get(action.action_type)
        if executor is None:
            raise ConfigurationError(
                f"No executor registered for action type: {action.action_type}"
            )
        return executor

    async def _execute_with_timeout(
        self,
        executor: ActionExecutor,
        action: AutomatedAction,
        context: ExecutionContext,
        timeout: float,
    ) -> ActionExecutionResult:
        """
        Race the plugin against its deadline

        On timeout the plugin is not cancelled: `context.cancellation` is set
        and whatever it later returns is logged and discarded.
        """
        metrics = get_metrics()
        if metrics:
            in_flight = metrics.track_active_execution()
            timed = metrics.time_operation(
                metrics.execution_duration, {"action_type": action.action_type}
            )
        else:
            in_flight = timed = nullcontext()

        task = asyncio.ensure_future(executor.execute(action, context))
        with in_flight, timed:
            done, _ = await asyncio.wait({task}, timeout=timeout)

        if task in done:
            return task.result()

        context.cancellation.set()
        self._orphaned.add(task)
        task.add_done_callback(
            functools.partial(self._discard_late_result, context.execution_id)
        )
        add_event("execution_timeout", {"timeout_seconds": timeout})
        raise ExecutionTimeoutError(timeout)

    def _discard_late_result(self, execution_id: str, task: asyncio.Future) -> None:
        self._orphaned.discard(task)
        if task.cancelled():
            logger.warning(f"Timed-out plugin for {execution_id} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                f"Timed-out plugin for {execution_id} later raised; discarded: {error}"
            )
            return
        logger.warning(
            f"Timed-out plugin for {execution_id} finished late "
            f"(success={task.result().success}); result discarded"
        )

    async def _complete(
        self,
        action: AutomatedAction,
        execution: ActionExecution,
        result: ActionExecutionResult,
    ) -> ActionExecution:
        now = self.clock()
        completed = await self.storage.transition_execution(
            execution.id,
            ExecutionStatus.EXECUTING,
            ExecutionStatus.COMPLETED,
            completed_at=now,
            result=result,
            rollback_data=result.rollback_data,
        )
        await self._bump_counter(action, success=True, at=now)
        await self.audit.log_action_completed(completed, action, result)
        self._record_status(action.action_type, ExecutionStatus.COMPLETED)
        logger.info(f"Execution {execution.id} completed")
        return completed

    async def _fail(
        self,
        action: AutomatedAction,
        execution: ActionExecution,
        error_message: str,
        result: Optional[ActionExecutionResult] = None,
    ) -> ActionExecution:
        failed = await self.storage.transition_execution(
            execution.id,
            ExecutionStatus.EXECUTING,
            ExecutionStatus.FAILED,
            error_message=error_message,
            result=result,
        )
        await self._bump_counter(action, success=False, at=self.clock())
        await self.audit.log_action_failed(failed, action, error_message)
        self._record_status(action.action_type, ExecutionStatus.FAILED)
        logger.info(f"Execution {execution.id} failed: {error_message}")
        return failed

    async def _bump_counter(
        self, action: AutomatedAction, success: bool, at: datetime
    ) -> None:
        try:
            await self.storage.increment_action_counter(action.id, success, at)
        except NotFoundError:
            logger.warning(f"Action {action.id} is not stored; counters not updated")

    def _record_status(self, action_type: str, status: ExecutionStatus) -> None:
        metrics = get_metrics()
        if metrics:
            metrics.record_execution(action_type, ExecutionStatus(status).value)

    # ------------------------------------------------------------------
    # Approval workflow
    # ------------------------------------------------------------------

    async def _require_execution(self, execution_id: str) -> ActionExecution:
        execution = await self.storage.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    async def _require_action(self, action_id: str) -> AutomatedAction:
        action = await self.storage.get_action(action_id)
        if action is None:
            raise NotFoundError("Action", action_id)
        return action

    @trace_async("selfheal.approve_execution")
    async def approve_execution(
        self,
        execution_id: str,
        approved_by: str,
        options: Optional[ExecutionOptions] = None,
    ) -> ActionExecution:
        """Approve a pending execution and run it with the stored action"""
        execution = await self._require_execution(execution_id)
        if execution.status != ExecutionStatus.PENDING_APPROVAL:
            raise StateConflictError(
                f"Cannot approve execution with status: {execution.status.value}"
            )
        action = await self._require_action(execution.action_id)

        await self.storage.transition_execution(
            execution_id,
            ExecutionStatus.PENDING_APPROVAL,
            ExecutionStatus.APPROVED,
            approved_by=approved_by,
            approved_at=self.clock(),
        )
        await self.audit.log_approval_event(
            AuditEventType.APPROVAL_GRANTED,
            execution_id,
            action.name or action.id,
            execution.organization_id,
            user_id=approved_by,
        )
        logger.info(f"Execution {execution_id} approved by {approved_by}")

        context = ExecutionContext(
            execution_id=execution_id,
            organization_id=execution.organization_id,
            triggered_by="manual",
            pattern=execution.pattern,
            initiated_by=approved_by,
        )
        return await self._run(
            action,
            execution_id,
            context,
            options or ExecutionOptions(),
            ExecutionStatus.APPROVED,
        )

    async def cancel_execution(
        self,
        execution_id: str,
        cancelled_by: str,
        reason: Optional[str] = None,
    ) -> ActionExecution:
        """Cancel an execution that is still waiting for approval"""
        execution = await self._require_execution(execution_id)
        if execution.status != ExecutionStatus.PENDING_APPROVAL:
            raise StateConflictError(
                f"Cannot cancel execution with status: {execution.status.value}"
            )

        cancelled = await self.storage.transition_execution(
            execution_id,
            ExecutionStatus.PENDING_APPROVAL,
            ExecutionStatus.CANCELLED,
            cancelled_by=cancelled_by,
            cancelled_at=self.clock(),
        )

        action = await self.storage.get_action(execution.action_id)
        await self.audit.log_approval_event(
            AuditEventType.APPROVAL_REJECTED,
            execution_id,
            (action.name or action.id) if action else execution.action_id,
            execution.organization_id,
            user_id=cancelled_by,
            reason=reason,
        )
        self._record_status(
            action.action_type if action else "unknown", ExecutionStatus.CANCELLED
        )
        logger.info(f"Execution {execution_id} cancelled by {cancelled_by}")
        return cancelled

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def _rollback_lock(self, execution_id: str) -> asyncio.Lock:
        lock = self._rollback_locks.get(execution_id)
        if lock is None:
            lock = asyncio.Lock()
            self._rollback_locks[execution_id] = lock
        return lock

    @trace_async("selfheal.rollback_execution")
    async def rollback_execution(
        self, execution_id: str, rolled_back_by: str
    ) -> ActionExecution:
        """
        Invoke the plugin's compensating action for a completed execution

        Raises:
            NotFoundError: execution or action missing
            StateConflictError: already rolled back, not completed, or no
                rollback data recorded
            ConfigurationError: the action type cannot be rolled back
            RollbackFailedError: the plugin reported or raised a failure
        """
        async with self._rollback_lock(execution_id):
            execution = await self._require_execution(execution_id)

            if execution.was_rolled_back:
                raise StateConflictError(
                    f"Execution {execution_id} has already been rolled back"
                )
            if execution.status != ExecutionStatus.COMPLETED:
                raise StateConflictError(
                    f"Cannot rollback execution with status: {execution.status.value}"
                )
            if execution.rollback_data is None:
                raise StateConflictError(
                    f"No rollback data available for execution {execution_id}"
                )

            action = await self._require_action(execution.action_id)
            executor = self.registry.get(action.action_type)
            if executor is None or not executor.can_rollback:
                raise ConfigurationError(
                    f"Rollback not supported for action type: {action.action_type}"
                )

            metrics = get_metrics()
            try:
                success = await executor.rollback(
                    action, execution_id, execution.rollback_data
                )
            except Exception as e:
                logger.error(f"Rollback of {execution_id} raised: {e}")
                if metrics:
                    metrics.record_rollback(action.action_type, "failed")
                raise RollbackFailedError(
                    f"Rollback failed for {execution_id}: {e}"
                ) from e

            if not success:
                logger.error(f"Rollback of {execution_id} reported failure")
                if metrics:
                    metrics.record_rollback(action.action_type, "failed")
                raise RollbackFailedError(f"Rollback operation failed for {execution_id}")

            rolled_back = await self.storage.transition_execution(
                execution_id,
                ExecutionStatus.COMPLETED,
                ExecutionStatus.ROLLED_BACK,
                was_rolled_back=True,
                rolled_back_at=self.clock(),
                rolled_back_by=rolled_back_by,
            )

        if metrics:
            metrics.record_rollback(action.action_type, "completed")
        logger.info(f"Execution {execution_id} rolled back by {rolled_back_by}")
        return rolled_back

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def execute_actions_for_patterns(
        self,
        organization_id: str,
        patterns: Iterable[DetectedPattern],
        options: Optional[ExecutionOptions] = None,
        matcher: Optional[PatternActionMatcher] = None,
    ) -> list[ActionExecution]:
        """
        Run every action matched by every pattern, each independently

        Each action first goes through the safety policy; a blocked action
        gets an audit entry and no execution. An action that raises is
        logged and skipped; the others still run.
        """
        matcher = matcher or PatternActionMatcher(self.storage)
        executions: list[ActionExecution] = []

        for pattern, actions in await matcher.resolve(organization_id, patterns):
            for action in actions:
                context = ExecutionContext(
                    execution_id=new_id("exec"),
                    organization_id=organization_id,
                    triggered_by="pattern",
                    pattern=pattern,
                )
                try:
                    safety = await run_safety_checks(
                        self.storage, action, pattern, self.safety, now=self.clock()
                    )
                    await self.audit.log_safety_result(action, safety)
                    if not safety.passed:
                        logger.warning(
                            f"Skipping action {action.id} for pattern {pattern.id}: "
                            f"{safety.blocked_reason}"
                        )
                        continue

                    executions.append(
                        await self.execute_action(action, context, options)
                    )
                except Exception as e:
                    logger.error(
                        f"Failed to execute action {action.id} for pattern "
                        f"{pattern.id}: {e}"
                    )

        return executions

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_execution(self, execution_id: str) -> ActionExecution:
        return await self._require_execution(execution_id)

    async def get_execution_history(
        self,
        organization_id: str,
        action_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ActionExecution]:
        """Executions newest first"""
        executions = await self.storage.list_executions(
            organization_id, action_id=action_id, status=status
        )
        return executions[offset : offset + limit]

    async def get_pending_approvals(self, organization_id: str) -> list[ActionExecution]:
        return await self.storage.list_executions(
            organization_id, status=ExecutionStatus.PENDING_APPROVAL
        )

    async def get_execution_statistics(
        self, organization_id: str, days: int = 30
    ) -> ExecutionStatistics:
        """Counts, success rate and mean run time over the last `days` days"""
        since = self.clock() - timedelta(days=days)
        executions = await self.storage.list_executions(organization_id, since=since)
        action_types = {
            a.id: a.action_type for a in await self.storage.list_actions(organization_id)
        }

        by_status = Counter(e.status.value for e in executions)
        by_action_type = Counter(
            action_types.get(e.action_id, "unknown") for e in executions
        )

        completed = [e for e in executions if e.status == ExecutionStatus.COMPLETED]
        finished = len(completed) + by_status.get(ExecutionStatus.FAILED.value, 0)
        durations = [
            (e.completed_at - e.executed_at).total_seconds() * 1000
            for e in completed
            if e.executed_at and e.completed_at
        ]

        return ExecutionStatistics(
            total=len(executions),
            by_status=dict(by_status),
            by_action_type=dict(by_action_type),
            success_rate=len(completed) / finished if finished else 0.0,
            avg_execution_time_ms=sum(durations) / len(durations) if durations else 0.0,
        )

    async def wait_for_orphans(self) -> None:
        """Wait for timed-out plugin runs to settle (shutdown and tests)"""
        if self._orphaned:
            await asyncio.wait(set(self._orphaned))
