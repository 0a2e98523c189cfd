"""
Test suite for the Action Executor Core

Tests the execution state machine, approval workflow, timeouts, dry runs,
rollback and batch execution for matched patterns.
"""

import asyncio

import pytest

from selfheal.audit import AuditEventType
from selfheal.errors import (
    ConfigurationError,
    NotFoundError,
    RollbackFailedError,
    StateConflictError,
)
from selfheal.models import ExecutionOptions, ExecutionStatus

from conftest import BASE_TIME, ORG, make_action, make_context, make_pattern


async def _event_types(storage):
    return {e.event_type for e in await storage.list_audit(ORG)}


class TestExecuteAction:
    """Test direct execution"""

    @pytest.mark.asyncio
    async def test_success(self, executor_service, storage, stored_action, recording_executor, sample_pattern):
        execution = await executor_service.execute_action(
            stored_action, make_context(pattern=sample_pattern)
        )

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.trigger_reason == sample_pattern.description
        assert execution.executed_at == BASE_TIME
        assert execution.completed_at == BASE_TIME
        assert execution.rollback_data == {"notified": "user-1"}
        assert execution.result.affected_entities == ["user-1"]
        assert len(recording_executor.calls) == 1

        action = await storage.get_action(stored_action.id)
        assert action.success_count == 1
        assert action.failure_count == 0
        assert action.last_triggered_at == BASE_TIME

        assert await _event_types(storage) == {
            AuditEventType.ACTION_TRIGGERED.value,
            AuditEventType.ACTION_EXECUTED.value,
            AuditEventType.ACTION_COMPLETED.value,
        }

    @pytest.mark.asyncio
    async def test_manual_trigger_reason(self, executor_service, stored_action):
        execution = await executor_service.execute_action(stored_action, make_context(triggered_by="manual"))
        assert execution.trigger_reason == "Manual trigger"

    @pytest.mark.asyncio
    async def test_duplicate_execution_id(self, executor_service, stored_action):
        await executor_service.execute_action(stored_action, make_context("exec-dup"))
        with pytest.raises(StateConflictError):
            await executor_service.execute_action(stored_action, make_context("exec-dup"))

    @pytest.mark.asyncio
    async def test_plugin_exception_becomes_failure(self, executor_service, storage):
        action = await storage.save_action(make_action(id="a-custom", action_type="custom"))

        execution = await executor_service.execute_action(action, make_context())

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "plugin exploded"
        stored = await storage.get_action("a-custom")
        assert stored.failure_count == 1
        assert stored.success_count == 0

    @pytest.mark.asyncio
    async def test_plugin_reported_failure(self, executor_service, stored_action, recording_executor):
        recording_executor.result = recording_executor.result.model_copy(
            update={"success": False, "error_message": "recipient unknown"}
        )

        execution = await executor_service.execute_action(stored_action, make_context())

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error_message == "recipient unknown"
        assert execution.result is not None

    @pytest.mark.asyncio
    async def test_missing_plugin(self, executor_service, storage):
        action = await storage.save_action(make_action(id="a-x", action_type="redistribute"))

        execution = await executor_service.execute_action(action, make_context())

        assert execution.status == ExecutionStatus.FAILED
        assert "No executor registered for action type: redistribute" in execution.error_message

    @pytest.mark.asyncio
    async def test_validation_failure_skips_plugin(self, executor_service, storage, escalation_executor):
        action = await storage.save_action(
            make_action(id="a-esc", action_type="escalation", action_config={"escalation_chain": []})
        )

        execution = await executor_service.execute_action(action, make_context())

        assert execution.status == ExecutionStatus.FAILED
        assert "Escalation chain is required" in execution.error_message
        assert await storage.list_notifications(organization_id=ORG) == []

    @pytest.mark.asyncio
    async def test_unstored_action_still_runs(self, executor_service, storage):
        execution = await executor_service.execute_action(make_action(id="a-ghost"), make_context())
        assert execution.status == ExecutionStatus.COMPLETED
        assert await storage.get_action("a-ghost") is None


class TestApprovalWorkflow:
    """Test approval gating"""

    @pytest.mark.asyncio
    async def test_requires_approval(self, executor_service, storage, recording_executor):
        action = await storage.save_action(make_action(requires_approval=True))

        execution = await executor_service.execute_action(action, make_context())

        assert execution.status == ExecutionStatus.PENDING_APPROVAL
        assert recording_executor.calls == []
        stored = await storage.get_action(action.id)
        assert (stored.success_count, stored.failure_count) == (0, 0)
        assert AuditEventType.APPROVAL_REQUESTED.value in await _event_types(storage)
        assert [e.id for e in await executor_service.get_pending_approvals(ORG)] == ["exec-1"]

    @pytest.mark.asyncio
    async def test_bypass_approval(self, executor_service, storage, recording_executor):
        action = await storage.save_action(make_action(requires_approval=True))

        execution = await executor_service.execute_action(
            action, make_context(), ExecutionOptions(bypass_approval=True)
        )

        assert execution.status == ExecutionStatus.COMPLETED
        assert len(recording_executor.calls) == 1

    @pytest.mark.asyncio
    async def test_approve_runs_with_stored_pattern(self, executor_service, storage, recording_executor, sample_pattern):
        action = await storage.save_action(make_action(requires_approval=True))
        await executor_service.execute_action(action, make_context(pattern=sample_pattern))

        execution = await executor_service.approve_execution("exec-1", "alice")

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.approved_by == "alice"
        assert execution.approved_at == BASE_TIME
        context = recording_executor.calls[0]
        assert context.triggered_by == "manual"
        assert context.initiated_by == "alice"
        assert context.pattern.id == sample_pattern.id

    @pytest.mark.asyncio
    async def test_approve_twice(self, executor_service, storage):
        action = await storage.save_action(make_action(requires_approval=True))
        await executor_service.execute_action(action, make_context())
        await executor_service.approve_execution("exec-1", "alice")

        with pytest.raises(StateConflictError, match="Cannot approve execution with status: completed"):
            await executor_service.approve_execution("exec-1", "bob")

    @pytest.mark.asyncio
    async def test_approve_missing(self, executor_service):
        with pytest.raises(NotFoundError):
            await executor_service.approve_execution("exec-missing", "alice")

    @pytest.mark.asyncio
    async def test_cancel(self, executor_service, storage, recording_executor):
        action = await storage.save_action(make_action(requires_approval=True))
        await executor_service.execute_action(action, make_context())

        cancelled = await executor_service.cancel_execution("exec-1", "bob", reason="not needed")

        assert cancelled.status == ExecutionStatus.CANCELLED
        assert cancelled.cancelled_by == "bob"
        assert recording_executor.calls == []
        with pytest.raises(StateConflictError):
            await executor_service.approve_execution("exec-1", "alice")
        assert AuditEventType.APPROVAL_REJECTED.value in await _event_types(storage)

    @pytest.mark.asyncio
    async def test_cancel_completed(self, executor_service, stored_action):
        await executor_service.execute_action(stored_action, make_context())
        with pytest.raises(StateConflictError):
            await executor_service.cancel_execution("exec-1", "bob")


class TestTimeoutAndDryRun:
    """Test deadlines and dry runs"""

    @pytest.mark.asyncio
    async def test_timeout_fails_execution(self, executor_service, storage, executors):
        action = await storage.save_action(make_action(id="a-slow", action_type="retry"))

        execution = await executor_service.execute_action(
            action, make_context(), ExecutionOptions(timeout_seconds=0.05)
        )

        assert execution.status == ExecutionStatus.FAILED
        assert "timed out" in execution.error_message

        # The late plugin result must not resurrect the execution
        await executor_service.wait_for_orphans()
        assert executors.get("retry").saw_cancellation is True
        stored = await storage.get_execution(execution.id)
        assert stored.status == ExecutionStatus.FAILED
        assert (await storage.get_action("a-slow")).success_count == 0

    @pytest.mark.asyncio
    async def test_dry_run(self, executor_service, storage, stored_action, recording_executor):
        execution = await executor_service.execute_action(
            stored_action, make_context(), ExecutionOptions(dry_run=True)
        )

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.result.metrics == {"dry_run": 1.0}
        assert recording_executor.calls == []
        stored = await storage.get_action(stored_action.id)
        assert stored.success_count == 1
        assert stored.failure_count == 0
        assert stored.last_triggered_at == BASE_TIME

    @pytest.mark.asyncio
    async def test_dry_run_still_validates(self, executor_service, storage, escalation_executor):
        action = await storage.save_action(
            make_action(id="a-esc", action_type="escalation", action_config={})
        )

        execution = await executor_service.execute_action(
            action, make_context(), ExecutionOptions(dry_run=True)
        )

        assert execution.status == ExecutionStatus.FAILED
        assert (await storage.get_action("a-esc")).failure_count == 1


class TestRollbackExecution:
    """Test compensation of completed executions"""

    @pytest.mark.asyncio
    async def test_rollback(self, executor_service, stored_action, recording_executor):
        await executor_service.execute_action(stored_action, make_context())

        rolled_back = await executor_service.rollback_execution("exec-1", "carol")

        assert rolled_back.status == ExecutionStatus.ROLLED_BACK
        assert rolled_back.was_rolled_back is True
        assert rolled_back.rolled_back_by == "carol"
        assert recording_executor.rollbacks == ["exec-1"]

    @pytest.mark.asyncio
    async def test_rollback_twice(self, executor_service, stored_action, recording_executor):
        await executor_service.execute_action(stored_action, make_context())
        await executor_service.rollback_execution("exec-1", "carol")

        with pytest.raises(StateConflictError, match="already been rolled back"):
            await executor_service.rollback_execution("exec-1", "carol")
        assert recording_executor.rollbacks == ["exec-1"]

    @pytest.mark.asyncio
    async def test_concurrent_rollback_runs_once(self, executor_service, stored_action, recording_executor):
        await executor_service.execute_action(stored_action, make_context())

        results = await asyncio.gather(
            executor_service.rollback_execution("exec-1", "carol"),
            executor_service.rollback_execution("exec-1", "dave"),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, StateConflictError)) == 1
        assert recording_executor.rollbacks == ["exec-1"]

    @pytest.mark.asyncio
    async def test_plugin_rollback_failure(self, executor_service, storage, stored_action, recording_executor):
        await executor_service.execute_action(stored_action, make_context())
        recording_executor.rollback_result = False

        with pytest.raises(RollbackFailedError):
            await executor_service.rollback_execution("exec-1", "carol")

        stored = await storage.get_execution("exec-1")
        assert stored.status == ExecutionStatus.COMPLETED
        assert stored.was_rolled_back is False

    @pytest.mark.asyncio
    async def test_rollback_failed_execution(self, executor_service, storage):
        action = await storage.save_action(make_action(id="a-custom", action_type="custom"))
        await executor_service.execute_action(action, make_context())

        with pytest.raises(StateConflictError, match="Cannot rollback execution with status: failed"):
            await executor_service.rollback_execution("exec-1", "carol")

    @pytest.mark.asyncio
    async def test_rollback_without_data(self, executor_service, storage, stored_action, recording_executor):
        recording_executor.result = recording_executor.result.model_copy(update={"rollback_data": None})
        await executor_service.execute_action(stored_action, make_context())

        with pytest.raises(StateConflictError, match="No rollback data"):
            await executor_service.rollback_execution("exec-1", "carol")

    @pytest.mark.asyncio
    async def test_rollback_with_empty_data(self, executor_service, storage, stored_action, recording_executor):
        recording_executor.result = recording_executor.result.model_copy(update={"rollback_data": {}})
        await executor_service.execute_action(stored_action, make_context())
        assert (await storage.get_execution("exec-1")).rollback_data == {}

        rolled_back = await executor_service.rollback_execution("exec-1", "carol")

        assert rolled_back.status == ExecutionStatus.ROLLED_BACK
        assert recording_executor.rollbacks == ["exec-1"]

    @pytest.mark.asyncio
    async def test_rollback_unsupported_type(self, executor_service, storage, executors, recording_executor):
        action = await storage.save_action(make_action())
        await executor_service.execute_action(action, make_context())
        executors.unregister("notify")

        with pytest.raises(ConfigurationError):
            await executor_service.rollback_execution("exec-1", "carol")


class TestBatchAndQueries:
    """Test pattern-driven batch execution and queries"""

    @pytest.mark.asyncio
    async def test_execute_for_patterns(self, executor_service, storage, recording_executor):
        await storage.save_action(make_action(id="a1"))
        await storage.save_action(make_action(id="a2", action_type="custom"))
        await storage.save_action(make_action(id="a3", requires_approval=True))

        executions = await executor_service.execute_actions_for_patterns(
            ORG, [make_pattern(), make_pattern(id="p-other", type="workload_imbalance")]
        )

        by_action = {e.action_id: e.status for e in executions}
        assert by_action == {
            "a1": ExecutionStatus.COMPLETED,
            "a2": ExecutionStatus.FAILED,
            "a3": ExecutionStatus.PENDING_APPROVAL,
        }
        assert len({e.id for e in executions}) == 3
        assert recording_executor.calls[0].triggered_by == "pattern"

    @pytest.mark.asyncio
    async def test_history_and_statistics(self, executor_service, storage, stored_action, clock):
        failing = await storage.save_action(make_action(id="a-custom", action_type="custom"))

        await executor_service.execute_action(stored_action, make_context("exec-1"))
        clock.advance(minutes=1)
        await executor_service.execute_action(stored_action, make_context("exec-2"))
        clock.advance(minutes=1)
        await executor_service.execute_action(failing, make_context("exec-3"))

        history = await executor_service.get_execution_history(ORG)
        assert [e.id for e in history] == ["exec-3", "exec-2", "exec-1"]
        assert [e.id for e in await executor_service.get_execution_history(ORG, limit=1, offset=1)] == ["exec-2"]
        assert len(await executor_service.get_execution_history(ORG, action_id="a-custom")) == 1

        stats = await executor_service.get_execution_statistics(ORG)
        assert stats.total == 3
        assert stats.by_status == {"completed": 2, "failed": 1}
        assert stats.by_action_type == {"notify": 2, "custom": 1}
        assert stats.success_rate == pytest.approx(2 / 3)
        assert stats.avg_execution_time_ms == 0.0

    @pytest.mark.asyncio
    async def test_get_execution_missing(self, executor_service):
        with pytest.raises(NotFoundError):
            await executor_service.get_execution("nope")
