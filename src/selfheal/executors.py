"""
Action executor plugin contract and registry

Each action type is served by one ActionExecutor. The executor core resolves
the plugin by `action.action_type` at run time.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from .models import (
    ActionExecutionResult,
    AutomatedAction,
    ExecutionContext,
    ValidationResult,
)

logger = logging.getLogger(__name__)


class ActionExecutor(ABC):
    """
    Abstract base class for action executor plugins

    Subclasses set `action_type` and `can_rollback`, and implement `execute`.
    Plugins that declare `can_rollback = True` must override `rollback`.

    Long-running plugins should watch `context.cancellation`: once it is set
    the executor core has already failed the execution on timeout and will
    discard whatever the plugin eventually returns.
    """

    action_type: str = ""
    can_rollback: bool = False

    @abstractmethod
    async def execute(
        self, action: AutomatedAction, context: ExecutionContext
    ) -> ActionExecutionResult:
        """
        Perform the action

        Returns:
            Result; `success=False` results are recorded as failed executions
        """

    def validate(self, config: dict[str, Any]) -> ValidationResult:
        """Check an action configuration before any side effect"""
        return ValidationResult(valid=True)

    async def rollback(
        self,
        action: AutomatedAction,
        execution_id: str,
        rollback_data: dict[str, Any],
    ) -> bool:
        """Undo a completed execution using the data it recorded"""
        raise NotImplementedError(f"{type(self).__name__} does not support rollback")

    def has_rollback_hook(self) -> bool:
        return type(self).rollback is not ActionExecutor.rollback


class ExecutorRegistry:
    """Thread-safe table of executor plugins keyed by action type"""

    def __init__(self):
        self._executors: dict[str, ActionExecutor] = {}
        self._lock = threading.Lock()

    def register(self, executor: ActionExecutor) -> None:
        action_type = str(executor.action_type)
        if not action_type:
            raise ValueError(
                f"Executor {type(executor).__name__} must define 'action_type'"
            )
        if executor.can_rollback and not executor.has_rollback_hook():
            raise ValueError(
                f"Executor {type(executor).__name__} declares can_rollback "
                "but does not implement rollback()"
            )
        with self._lock:
            if action_type in self._executors:
                logger.warning(f"Replacing executor for action type: {action_type}")
            self._executors[action_type] = executor
        logger.debug(f"Registered executor: {action_type}")

    def unregister(self, action_type: str) -> bool:
        with self._lock:
            return self._executors.pop(str(action_type), None) is not None

    def get(self, action_type: str) -> Optional[ActionExecutor]:
        with self._lock:
            return self._executors.get(str(action_type))

    def get_registered_types(self) -> list[str]:
        with self._lock:
            return sorted(self._executors)

    def can_rollback(self, action_type: str) -> bool:
        executor = self.get(action_type)
        return executor is not None and executor.can_rollback

    def copy(self) -> "ExecutorRegistry":
        """Independent registry starting with the same executors"""
        clone = ExecutorRegistry()
        with self._lock:
            clone._executors = dict(self._executors)
        return clone


# Global registry instance
executor_registry = ExecutorRegistry()


def register_executor(executor_class: type) -> type:
    """Class decorator: instantiate and register on the global registry"""
    executor_registry.register(executor_class())
    return executor_class
