"""
Pytest configuration and shared fixtures for selfheal tests

Provides in-memory storage, isolated registries, a controllable clock, sample
patterns/actions and a few executor plugins with predictable behaviour.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from selfheal.actions.escalation import EscalationExecutor, LoggingEscalationScheduler
from selfheal.audit import AuditTrail
from selfheal.config import ExecutorConfig
from selfheal.detection import DetectorRegistry
from selfheal.executor import ActionExecutorService
from selfheal.executors import ActionExecutor, ExecutorRegistry
from selfheal.models import (
    ActionExecutionResult,
    AffectedEntity,
    AutomatedAction,
    DetectedPattern,
    ExecutionContext,
    Person,
    Severity,
    TriggerConfig,
)
from selfheal.storage import MemoryStorage

ORG = "org-1"
BASE_TIME = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingExecutor(ActionExecutor):
    """Succeeds, remembers every call and supports rollback"""

    action_type = "notify"
    can_rollback = True

    def __init__(self):
        self.calls: list[ExecutionContext] = []
        self.rollbacks: list[str] = []
        self.rollback_result = True
        self.result = ActionExecutionResult(
            success=True,
            affected_entities=["user-1"],
            rollback_data={"notified": "user-1"},
        )

    async def execute(self, action, context):
        self.calls.append(context)
        return self.result

    async def rollback(self, action, execution_id, rollback_data):
        self.rollbacks.append(execution_id)
        return self.rollback_result


class SlowExecutor(ActionExecutor):
    """Sleeps past any short deadline, then reports success"""

    action_type = "retry"

    def __init__(self, delay: float = 0.2):
        self.delay = delay
        self.saw_cancellation = False

    async def execute(self, action, context):
        await asyncio.sleep(self.delay)
        self.saw_cancellation = context.cancelled
        return ActionExecutionResult(success=True)


class FailingExecutor(ActionExecutor):
    """Raises from execute"""

    action_type = "custom"

    async def execute(self, action, context):
        raise RuntimeError("plugin exploded")


def make_action(**overrides) -> AutomatedAction:
    data = {
        "id": "action-notify",
        "organization_id": ORG,
        "name": "Notify owner",
        "action_type": "notify",
        "trigger_config": TriggerConfig(type="pattern", pattern_type="stuck_workflow"),
    }
    data.update(overrides)
    return AutomatedAction(**data)


def make_pattern(**overrides) -> DetectedPattern:
    data = {
        "id": "pattern-1",
        "type": "stuck_workflow",
        "description": "Workflow stuck in review",
        "severity": Severity.HIGH,
        "affected_entities": [
            AffectedEntity(type="workflow", id="wf-1", name="Invoice approval")
        ],
        "first_detected_at": BASE_TIME - timedelta(minutes=30),
        "last_detected_at": BASE_TIME - timedelta(minutes=5),
        "suggested_actions": ["Reassign reviewer"],
    }
    data.update(overrides)
    return DetectedPattern(**data)


def make_context(execution_id: str = "exec-1", pattern=None, **overrides) -> ExecutionContext:
    return ExecutionContext(
        execution_id=execution_id,
        organization_id=overrides.pop("organization_id", ORG),
        triggered_by=overrides.pop("triggered_by", "pattern"),
        pattern=pattern,
        **overrides,
    )


@pytest.fixture
def clock():
    """Provide a clock fixed at BASE_TIME"""
    return FixedClock()


@pytest.fixture
def storage():
    """Provide a fresh in-memory storage backend"""
    return MemoryStorage()


@pytest.fixture
def detectors():
    """Provide an empty detector registry"""
    return DetectorRegistry()


@pytest.fixture
def recording_executor():
    return RecordingExecutor()


@pytest.fixture
def executors(recording_executor):
    """Provide a registry with the predictable test plugins"""
    registry = ExecutorRegistry()
    registry.register(recording_executor)
    registry.register(SlowExecutor())
    registry.register(FailingExecutor())
    return registry


@pytest.fixture
def audit(storage, clock):
    return AuditTrail(storage, clock=clock)


@pytest.fixture
def executor_service(storage, executors, audit, clock):
    """Provide an executor service with a short default deadline"""
    return ActionExecutorService(
        storage,
        registry=executors,
        audit=audit,
        config=ExecutorConfig(default_timeout_seconds=5.0),
        clock=clock,
    )


@pytest.fixture
def scheduler():
    return LoggingEscalationScheduler()


@pytest.fixture
def escalation_executor(storage, executors, scheduler, clock):
    """Provide an escalation executor registered alongside the test plugins"""
    executor = EscalationExecutor(storage, scheduler=scheduler, clock=clock)
    executors.register(executor)
    return executor


@pytest_asyncio.fixture
async def persons(storage):
    """Seed a small directory: employee -> manager, plus two supervisors"""
    people = [
        Person(id="emp-1", organization_id=ORG, name="Eve Employee", role="clerk", manager_id="mgr-1"),
        Person(id="mgr-1", organization_id=ORG, name="Max Manager", role="manager", email="max@example.com"),
        Person(id="sup-1", organization_id=ORG, name="Sam Supervisor", role="supervisor", current_workload=5),
        Person(id="sup-2", organization_id=ORG, name="Sue Supervisor", role="supervisor", current_workload=2),
        Person(id="dir-1", organization_id=ORG, name="Dana Director", role="director"),
    ]
    for person in people:
        await storage.save_person(person)
    return {p.id: p for p in people}


@pytest.fixture
def sample_pattern():
    return make_pattern()


@pytest_asyncio.fixture
async def stored_action(storage):
    """An active notify action stored for ORG"""
    return await storage.save_action(make_action())
