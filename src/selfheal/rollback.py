"""
Rollback Service

Decides whether a completed execution may still be compensated and runs the
request/approve/reject workflow around ActionExecutorService.rollback_execution.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from .audit import AuditEventType, AuditTrail
from .config import RollbackConfig
from .errors import (
    ConfigurationError,
    NotFoundError,
    RollbackFailedError,
    RollbackNotEligibleError,
    StateConflictError,
)
from .executor import ActionExecutorService
from .models import (
    ActionExecution,
    ExecutionStatus,
    RollbackCandidate,
    RollbackEligibility,
    RollbackOutcome,
    RollbackRequest,
    RollbackRequestStatus,
)
from .observability.tracer import trace_async

logger = logging.getLogger(__name__)

RollbackPolicy = RollbackConfig

# Failures that end an approved request as `failed` instead of propagating
_ROLLBACK_FAILURES = (
    RollbackFailedError,
    StateConflictError,
    ConfigurationError,
    NotFoundError,
)


class RollbackService:
    """Eligibility policy plus the approval workflow for rollbacks"""

    def __init__(
        self,
        executor_service: ActionExecutorService,
        policy: Optional[RollbackPolicy] = None,
        audit: Optional[AuditTrail] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.executor_service = executor_service
        self.storage = executor_service.storage
        self.registry = executor_service.registry
        self.policy = policy or RollbackPolicy()
        self.audit = audit or executor_service.audit
        self.clock = clock or executor_service.clock

    async def check_rollback_eligibility(self, execution_id: str) -> RollbackEligibility:
        """
        Evaluate the rollback policy for one execution

        Checks run in a fixed order and the first failure wins: the execution
        exists, has not been rolled back, is completed, its action type can be
        rolled back and is not disabled, it recorded rollback data, and it
        completed within the rollback window. Exactly at the window edge is
        still eligible.
        """
        execution = await self.storage.get_execution(execution_id)
        if execution is None:
            return RollbackEligibility(
                eligible=False, reason=f"Execution not found: {execution_id}"
            )
        if execution.was_rolled_back:
            return RollbackEligibility(
                eligible=False, reason="Execution has already been rolled back"
            )
        if execution.status != ExecutionStatus.COMPLETED:
            return RollbackEligibility(
                eligible=False,
                reason=f"Cannot rollback execution with status: {execution.status.value}",
            )

        action = await self.storage.get_action(execution.action_id)
        if action is None:
            return RollbackEligibility(
                eligible=False, reason=f"Action not found: {execution.action_id}"
            )
        if not self.registry.can_rollback(action.action_type):
            return RollbackEligibility(
                eligible=False,
                reason=f"Action type '{action.action_type}' does not support rollback",
            )
        if action.action_type in self.policy.non_rollbackable_action_types:
            return RollbackEligibility(
                eligible=False,
                reason=f"Rollback is disabled for action type '{action.action_type}'",
            )
        if execution.rollback_data is None:
            return RollbackEligibility(
                eligible=False, reason="No rollback data available for this execution"
            )
        if execution.completed_at is None:
            return RollbackEligibility(
                eligible=False, reason="Execution has no completion time"
            )

        window = self.policy.max_rollback_window_hours
        hours_since = (self.clock() - execution.completed_at).total_seconds() / 3600
        if hours_since > window:
            return RollbackEligibility(
                eligible=False,
                reason=(
                    f"Rollback window of {window:g} hours has expired "
                    f"({hours_since:.1f} hours since completion)"
                ),
                hours_since_completion=hours_since,
                hours_remaining=0.0,
            )

        return RollbackEligibility(
            eligible=True,
            hours_since_completion=hours_since,
            hours_remaining=window - hours_since,
        )

    @trace_async("selfheal.request_rollback")
    async def request_rollback(
        self,
        execution_id: str,
        requested_by: str,
        reason: Optional[str] = None,
    ) -> RollbackOutcome:
        """
        Roll back now, or park a request when the policy requires approval

        Raises:
            RollbackNotEligibleError: the policy rejects the rollback
            StateConflictError: a request for this execution is already pending
            RollbackFailedError: the compensating action failed (audited first)
        """
        eligibility = await self.check_rollback_eligibility(execution_id)
        if not eligibility.eligible:
            raise RollbackNotEligibleError(execution_id, eligibility.reason or "")

        execution = await self.executor_service.get_execution(execution_id)
        await self.audit.log_rollback_event(
            AuditEventType.ROLLBACK_REQUESTED,
            execution_id,
            execution.organization_id,
            requested_by,
            reason=reason,
        )

        if self.policy.require_approval:
            pending = await self.storage.list_rollback_requests(
                execution.organization_id,
                status=RollbackRequestStatus.PENDING,
                execution_id=execution_id,
            )
            if pending:
                raise StateConflictError(
                    f"Rollback request {pending[0].id} is already pending for {execution_id}"
                )
            request = await self.storage.save_rollback_request(
                RollbackRequest(
                    execution_id=execution_id,
                    organization_id=execution.organization_id,
                    requested_by=requested_by,
                    reason=reason,
                    created_at=self.clock(),
                )
            )
            logger.info(f"Rollback request {request.id} awaiting approval")
            return RollbackOutcome(status="pending_approval", request=request)

        try:
            rolled_back = await self.executor_service.rollback_execution(
                execution_id, requested_by
            )
        except Exception as e:
            await self.audit.log_rollback_event(
                AuditEventType.ROLLBACK_COMPLETED,
                execution_id,
                execution.organization_id,
                requested_by,
                reason=reason,
                success=False,
                error=str(e),
            )
            raise

        await self.audit.log_rollback_event(
            AuditEventType.ROLLBACK_COMPLETED,
            execution_id,
            execution.organization_id,
            requested_by,
            reason=reason,
            success=True,
        )
        return RollbackOutcome(status="completed", execution=rolled_back)

    async def _require_request(self, request_id: str) -> RollbackRequest:
        request = await self.storage.get_rollback_request(request_id)
        if request is None:
            raise NotFoundError("Rollback request", request_id)
        return request

    @trace_async("selfheal.approve_rollback")
    async def approve_rollback(self, request_id: str, approved_by: str) -> RollbackRequest:
        """
        Approve a pending request and perform the rollback

        Eligibility is re-checked at approval time. An ineligible or failing
        rollback ends the request as `failed` with an error message rather
        than raising.
        """
        request = await self._require_request(request_id)
        if request.status != RollbackRequestStatus.PENDING:
            raise StateConflictError(
                f"Cannot approve rollback request with status: {request.status.value}"
            )

        request = await self.storage.transition_rollback_request(
            request_id,
            RollbackRequestStatus.PENDING,
            RollbackRequestStatus.APPROVED,
            approved_by=approved_by,
            approved_at=self.clock(),
        )

        eligibility = await self.check_rollback_eligibility(request.execution_id)
        if not eligibility.eligible:
            return await self._finish_failed(request, approved_by, eligibility.reason or "")

        try:
            await self.executor_service.rollback_execution(
                request.execution_id, approved_by
            )
        except _ROLLBACK_FAILURES as e:
            logger.error(f"Approved rollback {request_id} failed: {e}")
            return await self._finish_failed(request, approved_by, str(e))

        completed = await self.storage.transition_rollback_request(
            request_id,
            RollbackRequestStatus.APPROVED,
            RollbackRequestStatus.COMPLETED,
            completed_at=self.clock(),
        )
        await self.audit.log_rollback_event(
            AuditEventType.ROLLBACK_COMPLETED,
            request.execution_id,
            request.organization_id,
            approved_by,
            reason=request.reason,
            success=True,
        )
        logger.info(f"Rollback request {request_id} completed")
        return completed

    async def _finish_failed(
        self, request: RollbackRequest, user_id: str, error: str
    ) -> RollbackRequest:
        failed = await self.storage.transition_rollback_request(
            request.id,
            RollbackRequestStatus.APPROVED,
            RollbackRequestStatus.FAILED,
            error_message=error,
            completed_at=self.clock(),
        )
        await self.audit.log_rollback_event(
            AuditEventType.ROLLBACK_COMPLETED,
            request.execution_id,
            request.organization_id,
            user_id,
            reason=request.reason,
            success=False,
            error=error,
        )
        return failed

    async def reject_rollback(
        self,
        request_id: str,
        rejected_by: str,
        reason: Optional[str] = None,
    ) -> RollbackRequest:
        request = await self._require_request(request_id)
        if request.status != RollbackRequestStatus.PENDING:
            raise StateConflictError(
                f"Cannot reject rollback request with status: {request.status.value}"
            )

        rejected = await self.storage.transition_rollback_request(
            request_id,
            RollbackRequestStatus.PENDING,
            RollbackRequestStatus.REJECTED,
            rejected_by=rejected_by,
            rejected_at=self.clock(),
            rejection_reason=reason,
        )
        await self.audit.log_rollback_event(
            AuditEventType.ROLLBACK_REJECTED,
            request.execution_id,
            request.organization_id,
            rejected_by,
            reason=reason,
        )
        logger.info(f"Rollback request {request_id} rejected by {rejected_by}")
        return rejected

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_rollbackable_executions(
        self, organization_id: str
    ) -> list[RollbackCandidate]:
        """Completed executions that are still eligible, soonest deadline first"""
        candidates = []
        window = timedelta(hours=self.policy.max_rollback_window_hours)
        for execution in await self.storage.list_executions(
            organization_id, status=ExecutionStatus.COMPLETED
        ):
            eligibility = await self.check_rollback_eligibility(execution.id)
            if eligibility.eligible:
                candidates.append(
                    RollbackCandidate(
                        execution=execution,
                        deadline=execution.completed_at + window,
                        hours_remaining=eligibility.hours_remaining or 0.0,
                    )
                )
        return sorted(candidates, key=lambda c: c.deadline)

    async def get_pending_rollback_requests(
        self, organization_id: str
    ) -> list[RollbackRequest]:
        return await self.storage.list_rollback_requests(
            organization_id, status=RollbackRequestStatus.PENDING
        )

    async def get_rollback_history(
        self, organization_id: str, limit: int = 50
    ) -> list[ActionExecution]:
        """Rolled-back executions, most recently rolled back first"""
        executions = await self.storage.list_executions(
            organization_id, status=ExecutionStatus.ROLLED_BACK
        )
        executions.sort(
            key=lambda e: e.rolled_back_at or e.created_at, reverse=True
        )
        return executions[:limit]
