"""
Built-in action executors
"""

from .escalation import (
    EscalationExecutor,
    EscalationScheduler,
    LoggingEscalationScheduler,
    validate_escalation_config,
)

__all__ = [
    "EscalationExecutor",
    "EscalationScheduler",
    "LoggingEscalationScheduler",
    "validate_escalation_config",
]
