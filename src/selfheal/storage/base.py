"""
Base storage interface

Backends implement five record-level primitives over named collections; the
typed API used by the engine (actions, executions, escalations, rollback
requests, audit entries...) is built on top of them here so every backend
shares the same state-machine and concurrency checks.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

from pydantic import BaseModel

from ..errors import NotFoundError, StateConflictError, VersionConflictError
from ..models import (
    ActionExecution,
    AuditEntry,
    AutomatedAction,
    Escalation,
    EscalationState,
    EscalationStatus,
    ExecutionStatus,
    Notification,
    Person,
    RollbackRequest,
    RollbackRequestStatus,
    can_transition,
)

M = TypeVar("M", bound=BaseModel)

ACTIONS = "actions"
EXECUTIONS = "executions"
ESCALATION_STATES = "escalation_states"
ESCALATIONS = "escalations"
PERSONS = "persons"
NOTIFICATIONS = "notifications"
AUDIT = "audit"
ROLLBACK_REQUESTS = "rollback_requests"

COLLECTION_MODELS: dict[str, type[BaseModel]] = {
    ACTIONS: AutomatedAction,
    EXECUTIONS: ActionExecution,
    ESCALATION_STATES: EscalationState,
    ESCALATIONS: Escalation,
    PERSONS: Person,
    NOTIFICATIONS: Notification,
    AUDIT: AuditEntry,
    ROLLBACK_REQUESTS: RollbackRequest,
}

Mutator = Callable[[Optional[BaseModel]], BaseModel]


def escalation_state_key(action_id: str, pattern_id: str) -> str:
    return f"{action_id}:{pattern_id}"


class StorageBackend(ABC):
    """
    Abstract base class for storage backends

    Records are pydantic models. Backends must return copies: mutating a
    returned record never changes stored state.
    """

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    @abstractmethod
    async def _load(self, collection: str, record_id: str) -> Optional[BaseModel]:
        """Fetch one record, None if absent"""

    @abstractmethod
    async def _store(self, collection: str, record_id: str, record: BaseModel) -> None:
        """Insert or overwrite one record"""

    @abstractmethod
    async def _delete(self, collection: str, record_id: str) -> bool:
        """Remove one record; True if it existed"""

    @abstractmethod
    async def _load_all(self, collection: str) -> list[BaseModel]:
        """Fetch every record of a collection"""

    @abstractmethod
    async def _update(
        self, collection: str, record_id: str, mutate: Mutator
    ) -> BaseModel:
        """
        Atomic read-modify-write

        `mutate` receives the current record (None if absent) and returns the
        replacement. Exceptions raised by `mutate` abort the write and
        propagate. No other writer may interleave between read and write.
        """

    async def ping(self) -> bool:
        """Check backend connectivity"""
        return True

    async def close(self) -> None:
        """Release backend resources"""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _require(self, collection: str, record_id: str, entity: str) -> Any:
        record = await self._load(collection, record_id)
        if record is None:
            raise NotFoundError(entity, record_id)
        return record

    @staticmethod
    def _newest_first(records: Iterable[M], attr: str) -> list[M]:
        return sorted(records, key=lambda r: getattr(r, attr), reverse=True)

    # ------------------------------------------------------------------
    # Automated actions
    # ------------------------------------------------------------------

    async def save_action(self, action: AutomatedAction) -> AutomatedAction:
        await self._store(ACTIONS, action.id, action)
        return action

    async def get_action(self, action_id: str) -> Optional[AutomatedAction]:
        return await self._load(ACTIONS, action_id)

    async def list_actions(
        self, organization_id: str, active_only: bool = False
    ) -> list[AutomatedAction]:
        actions = [
            a
            for a in await self._load_all(ACTIONS)
            if a.organization_id == organization_id and (a.is_active or not active_only)
        ]
        return sorted(actions, key=lambda a: a.id)

    async def increment_action_counter(
        self,
        action_id: str,
        success: bool,
        triggered_at: Optional[datetime] = None,
    ) -> AutomatedAction:
        """Bump success_count or failure_count atomically"""

        def mutate(current: Optional[AutomatedAction]) -> AutomatedAction:
            if current is None:
                raise NotFoundError("Action", action_id)
            changes: dict[str, Any] = {}
            if success:
                changes["success_count"] = current.success_count + 1
            else:
                changes["failure_count"] = current.failure_count + 1
            if triggered_at is not None:
                changes["last_triggered_at"] = triggered_at
            return current.model_copy(update=changes)

        return await self._update(ACTIONS, action_id, mutate)

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    async def save_execution(self, execution: ActionExecution) -> ActionExecution:
        await self._store(EXECUTIONS, execution.id, execution)
        return execution

    async def get_execution(self, execution_id: str) -> Optional[ActionExecution]:
        return await self._load(EXECUTIONS, execution_id)

    async def transition_execution(
        self,
        execution_id: str,
        expected: ExecutionStatus | Iterable[ExecutionStatus],
        target: ExecutionStatus,
        **changes: Any,
    ) -> ActionExecution:
        """
        Compare-and-set a status change

        Succeeds only if the stored status is one of `expected` and the state
        machine allows the edge; otherwise raises StateConflictError and
        nothing is written. `changes` are applied in the same write.
        """
        allowed = (
            {ExecutionStatus(expected)}
            if isinstance(expected, (str, ExecutionStatus))
            else {ExecutionStatus(s) for s in expected}
        )

        def mutate(current: Optional[ActionExecution]) -> ActionExecution:
            if current is None:
                raise NotFoundError("Execution", execution_id)
            if current.status not in allowed:
                raise StateConflictError(
                    f"Execution {execution_id} is {current.status.value}, "
                    f"expected {' or '.join(sorted(s.value for s in allowed))}"
                )
            if not can_transition(current.status, target):
                raise StateConflictError(
                    f"Illegal transition {current.status.value} -> "
                    f"{ExecutionStatus(target).value} for {execution_id}"
                )
            return current.model_copy(
                update={**changes, "status": target, "version": current.version + 1}
            )

        return await self._update(EXECUTIONS, execution_id, mutate)

    async def list_executions(
        self,
        organization_id: str,
        action_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        since: Optional[datetime] = None,
    ) -> list[ActionExecution]:
        """Executions newest first"""
        matches = [
            e
            for e in await self._load_all(EXECUTIONS)
            if e.organization_id == organization_id
            and (action_id is None or e.action_id == action_id)
            and (status is None or e.status == status)
            and (since is None or e.created_at >= since)
        ]
        return self._newest_first(matches, "created_at")

    # ------------------------------------------------------------------
    # Escalation state
    # ------------------------------------------------------------------

    async def get_escalation_state(
        self, action_id: str, pattern_id: str
    ) -> Optional[EscalationState]:
        return await self._load(
            ESCALATION_STATES, escalation_state_key(action_id, pattern_id)
        )

    async def save_escalation_state(
        self, state: EscalationState, expected_version: int
    ) -> EscalationState:
        """
        Persist `state` if the stored version still equals `expected_version`

        An absent record counts as version 0. The stored copy gets
        version = expected_version + 1. Raises VersionConflictError otherwise.
        """
        key = escalation_state_key(state.action_id, state.pattern_id)

        def mutate(current: Optional[EscalationState]) -> EscalationState:
            stored_version = current.version if current is not None else 0
            if stored_version != expected_version:
                raise VersionConflictError(
                    f"Escalation state {key} is at version {stored_version}, "
                    f"expected {expected_version}"
                )
            return state.model_copy(update={"version": expected_version + 1})

        return await self._update(ESCALATION_STATES, key, mutate)

    async def delete_escalation_state(self, action_id: str, pattern_id: str) -> bool:
        return await self._delete(
            ESCALATION_STATES, escalation_state_key(action_id, pattern_id)
        )

    # ------------------------------------------------------------------
    # Escalation records
    # ------------------------------------------------------------------

    async def save_escalation(self, escalation: Escalation) -> Escalation:
        await self._store(ESCALATIONS, escalation.id, escalation)
        return escalation

    async def get_escalation(self, escalation_id: str) -> Optional[Escalation]:
        return await self._load(ESCALATIONS, escalation_id)

    async def list_escalations(
        self,
        action_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        status: Optional[EscalationStatus] = None,
    ) -> list[Escalation]:
        matches = [
            e
            for e in await self._load_all(ESCALATIONS)
            if (action_id is None or e.action_id == action_id)
            and (execution_id is None or e.execution_id == execution_id)
            and (status is None or e.status == status)
        ]
        return self._newest_first(matches, "created_at")

    async def transition_escalation(
        self,
        escalation_id: str,
        expected: EscalationStatus,
        target: EscalationStatus,
        **changes: Any,
    ) -> Escalation:
        def mutate(current: Optional[Escalation]) -> Escalation:
            if current is None:
                raise NotFoundError("Escalation", escalation_id)
            if current.status != expected:
                raise StateConflictError(
                    f"Escalation {escalation_id} is {current.status.value}, "
                    f"expected {EscalationStatus(expected).value}"
                )
            return current.model_copy(update={**changes, "status": target})

        return await self._update(ESCALATIONS, escalation_id, mutate)

    # ------------------------------------------------------------------
    # People directory and notifications
    # ------------------------------------------------------------------

    async def save_person(self, person: Person) -> Person:
        await self._store(PERSONS, person.id, person)
        return person

    async def get_person(self, person_id: str) -> Optional[Person]:
        return await self._load(PERSONS, person_id)

    async def list_persons(
        self, organization_id: str, role: Optional[str] = None
    ) -> list[Person]:
        persons = [
            p
            for p in await self._load_all(PERSONS)
            if p.organization_id == organization_id and (role is None or p.role == role)
        ]
        return sorted(persons, key=lambda p: p.id)

    async def save_notification(self, notification: Notification) -> Notification:
        await self._store(NOTIFICATIONS, notification.id, notification)
        return notification

    async def list_notifications(
        self,
        recipient_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> list[Notification]:
        matches = [
            n
            for n in await self._load_all(NOTIFICATIONS)
            if (recipient_id is None or n.recipient_id == recipient_id)
            and (organization_id is None or n.organization_id == organization_id)
        ]
        return self._newest_first(matches, "created_at")

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        await self._store(AUDIT, entry.id, entry)
        return entry

    async def list_audit(self, organization_id: str) -> list[AuditEntry]:
        """Audit entries for an organization, newest first"""
        matches = [
            e for e in await self._load_all(AUDIT) if e.organization_id == organization_id
        ]
        return self._newest_first(matches, "timestamp")

    # ------------------------------------------------------------------
    # Rollback requests
    # ------------------------------------------------------------------

    async def save_rollback_request(self, request: RollbackRequest) -> RollbackRequest:
        await self._store(ROLLBACK_REQUESTS, request.id, request)
        return request

    async def get_rollback_request(self, request_id: str) -> Optional[RollbackRequest]:
        return await self._load(ROLLBACK_REQUESTS, request_id)

    async def list_rollback_requests(
        self,
        organization_id: str,
        status: Optional[RollbackRequestStatus] = None,
        execution_id: Optional[str] = None,
    ) -> list[RollbackRequest]:
        matches = [
            r
            for r in await self._load_all(ROLLBACK_REQUESTS)
            if r.organization_id == organization_id
            and (status is None or r.status == status)
            and (execution_id is None or r.execution_id == execution_id)
        ]
        return self._newest_first(matches, "created_at")

    async def transition_rollback_request(
        self,
        request_id: str,
        expected: RollbackRequestStatus | Iterable[RollbackRequestStatus],
        target: RollbackRequestStatus,
        **changes: Any,
    ) -> RollbackRequest:
        allowed = (
            {RollbackRequestStatus(expected)}
            if isinstance(expected, (str, RollbackRequestStatus))
            else {RollbackRequestStatus(s) for s in expected}
        )

        def mutate(current: Optional[RollbackRequest]) -> RollbackRequest:
            if current is None:
                raise NotFoundError("Rollback request", request_id)
            if current.status not in allowed:
                raise StateConflictError(
                    f"Rollback request {request_id} is {current.status.value}, "
                    f"expected {' or '.join(sorted(s.value for s in allowed))}"
                )
            return current.model_copy(update={**changes, "status": target})

        return await self._update(ROLLBACK_REQUESTS, request_id, mutate)
