"""
Self-healing engine

Wires storage, registries and services together and exposes the
detect -> match -> execute cycle a scheduler or worker calls.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Callable, Optional

from .actions.escalation import EscalationExecutor, EscalationScheduler
from .audit import AuditTrail
from .config import SelfHealConfig, get_config
from .detection import DetectorRegistry, detect_patterns, detector_registry
from .executor import ActionExecutorService
from .executors import ExecutorRegistry, executor_registry
from .matcher import PatternActionMatcher
from .models import (
    CycleReport,
    DetectionResult,
    ExecutionOptions,
    Severity,
    utcnow,
)
from .observability.tracer import set_attribute, trace_operation
from .rollback import RollbackService
from .storage import StorageBackend, create_storage

logger = logging.getLogger(__name__)


class SelfHealingEngine:
    """
    Main orchestrator for the self-healing pipeline

    Each engine gets its own executor registry, seeded from the global one,
    with an EscalationExecutor bound to this engine's storage.
    """

    def __init__(
        self,
        config: Optional[SelfHealConfig] = None,
        storage: Optional[StorageBackend] = None,
        detectors: Optional[DetectorRegistry] = None,
        executors: Optional[ExecutorRegistry] = None,
        scheduler: Optional[EscalationScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.storage)
        self.detectors = detectors or detector_registry
        self.executors = executors or executor_registry.copy()
        self.clock = clock

        self.audit = AuditTrail(self.storage, clock=clock)
        self.matcher = PatternActionMatcher(self.storage)
        self.executor = ActionExecutorService(
            self.storage,
            registry=self.executors,
            audit=self.audit,
            config=self.config.executor,
            clock=clock,
            safety=self.config.safety,
        )
        self.escalation = EscalationExecutor(
            self.storage,
            config=self.config.escalation,
            scheduler=scheduler,
            clock=clock,
        )
        self.executors.register(self.escalation)
        self.rollback = RollbackService(
            self.executor, policy=self.config.rollback, audit=self.audit, clock=clock
        )

    async def detect(
        self,
        organization_id: str,
        pattern_types: Optional[Iterable[str]] = None,
        time_window_minutes: Optional[int] = None,
        min_severity: Optional[Severity] = None,
    ) -> DetectionResult:
        detection = self.config.detection
        return await detect_patterns(
            organization_id,
            pattern_types=pattern_types,
            time_window_minutes=time_window_minutes
            or detection.default_time_window_minutes,
            min_severity=min_severity or detection.min_severity,
            registry=self.detectors,
        )

    async def run_detection_cycle(
        self,
        organization_id: str,
        pattern_types: Optional[Iterable[str]] = None,
        time_window_minutes: Optional[int] = None,
        auto_execute: bool = False,
        dry_run: bool = False,
    ) -> CycleReport:
        """
        Detect patterns, audit them, match actions and optionally execute

        Args:
            organization_id: Tenant to scan
            pattern_types: Types to scan (None = every registered detector)
            time_window_minutes: Look-back window (defaults from config)
            auto_execute: Run matched actions that pass the safety policy
                (approval gating still applies)
            dry_run: Execute without invoking plugins

        Returns:
            CycleReport with annotated patterns, matches, executions and
            per-detector errors
        """
        with trace_operation(
            "selfheal.detection_cycle", {"selfheal.organization_id": organization_id}
        ):
            detection = await self.detect(
                organization_id, pattern_types, time_window_minutes
            )

            for pattern in detection.patterns:
                await self.audit.log_pattern_detected(pattern, organization_id)

            matches = await self.matcher.match(organization_id, detection.patterns)
            patterns = self.matcher.annotate(detection.patterns, matches)

            executions = []
            if auto_execute:
                executions = await self.executor.execute_actions_for_patterns(
                    organization_id,
                    patterns,
                    ExecutionOptions(dry_run=dry_run),
                    matcher=self.matcher,
                )

            set_attribute("selfheal.patterns", len(patterns))
            set_attribute("selfheal.executions", len(executions))
            logger.info(
                f"Cycle for {organization_id}: {len(patterns)} patterns, "
                f"{sum(1 for ids in matches.values() if ids)} matched, "
                f"{len(executions)} executions"
            )

            return CycleReport(
                organization_id=organization_id,
                patterns=patterns,
                matches=matches,
                executions=executions,
                errors=detection.errors,
            )

    async def close(self) -> None:
        await self.executor.wait_for_orphans()
        await self.storage.close()


async def run_detection_cycle(
    organization_id: str,
    pattern_types: Optional[Iterable[str]] = None,
    time_window_minutes: Optional[int] = None,
    auto_execute: bool = False,
    dry_run: bool = False,
    engine: Optional[SelfHealingEngine] = None,
) -> CycleReport:
    """
    Main entry point for a scheduled detection cycle

    Builds an engine from the global configuration when none is given.
    """
    owned = engine is None
    engine = engine or SelfHealingEngine()
    try:
        return await engine.run_detection_cycle(
            organization_id,
            pattern_types=pattern_types,
            time_window_minutes=time_window_minutes,
            auto_execute=auto_execute,
            dry_run=dry_run,
        )
    finally:
        if owned:
            await engine.close()
