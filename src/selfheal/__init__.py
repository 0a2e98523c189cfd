"""
selfheal - pattern-driven self-healing automation engine

Detects operational anomalies, matches them to operator-configured remedial
actions and executes those actions with approval gating, timeouts, audit,
escalation and rollback.
"""

__version__ = "0.1.0"

# Core API exports
from .config import SelfHealConfig
from .detection import detect_patterns, merge_patterns, register_detector
from .engine import SelfHealingEngine, run_detection_cycle
from .executors import ActionExecutor, register_executor

__all__ = [
    "run_detection_cycle",
    "detect_patterns",
    "merge_patterns",
    "register_detector",
    "register_executor",
    "ActionExecutor",
    "SelfHealingEngine",
    "SelfHealConfig",
    "__version__",
]
