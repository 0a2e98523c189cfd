"""
Exception hierarchy for selfheal

Plugin-level failures never surface as exceptions from the executor; they are
recorded on the execution. Everything here is raised to the immediate caller.
"""


class SelfHealError(Exception):
    """Base exception for selfheal errors"""


class ConfigurationError(SelfHealError):
    """Unregistered action/pattern type or unusable action configuration"""


class ActionValidationError(ConfigurationError):
    """Action configuration rejected by the executor's validate hook"""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(f"Invalid action configuration: {', '.join(self.errors)}")


class ExecutionTimeoutError(SelfHealError):
    """Executor plugin did not finish before its deadline"""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Action execution timed out after {timeout_seconds:g}s")


class NotFoundError(SelfHealError):
    """Referenced execution, action, escalation or rollback request is missing"""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class StateConflictError(SelfHealError):
    """Operation is not legal from the entity's current state"""


class RollbackNotEligibleError(StateConflictError):
    """Rollback policy rejected the request"""

    def __init__(self, execution_id: str, reason: str):
        self.execution_id = execution_id
        self.reason = reason
        super().__init__(f"Rollback not eligible for {execution_id}: {reason}")


class RollbackFailedError(SelfHealError):
    """The executor's compensating action did not succeed"""


class StorageError(SelfHealError):
    """Base exception for storage backend failures"""


class StorageConnectionError(StorageError):
    """Backend unreachable"""


class StorageSerializationError(StorageError):
    """Record could not be encoded or decoded"""


class VersionConflictError(StorageError, StateConflictError):
    """Optimistic concurrency check failed; the record changed underneath us"""
