"""
Pattern Detector Registry

Detectors are pluggable coroutines, one per pattern type, that scan an
organization over a time window and return normalized DetectedPattern values.
A scan runs every requested detector in isolation, merges duplicate reports of
the same condition and ranks the result by severity and recency.
"""

import logging
import threading
import time
from collections.abc import Iterable
from typing import Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from .errors import ConfigurationError
from .models import (
    AffectedEntity,
    DetectedPattern,
    DetectionResult,
    Severity,
    utcnow,
)
from .observability.metrics import get_metrics
from .observability.tracer import add_event, set_attribute, trace_async

logger = logging.getLogger(__name__)

DetectFn = Callable[[str, int], Awaitable[list[DetectedPattern]]]


@runtime_checkable
class PatternDetector(Protocol):
    """
    Protocol for pattern detectors

    Implementations look at one anomaly type. Thresholds and heuristics are
    entirely the detector's business; the registry only relies on the
    returned patterns being well-formed.
    """

    pattern_type: str

    async def detect(
        self, organization_id: str, time_window_minutes: int
    ) -> list[DetectedPattern]:
        """
        Scan an organization for this pattern type

        Args:
            organization_id: Tenant to scan
            time_window_minutes: How far back to look

        Returns:
            Patterns found (possibly empty)
        """
        ...


class DetectorRegistry:
    """Registry mapping pattern types to detector coroutines"""

    def __init__(self):
        self._detectors: dict[str, DetectFn] = {}
        self._lock = threading.Lock()

    def register(
        self, pattern_type: str, detector: Union[DetectFn, PatternDetector]
    ) -> None:
        """Register a detector for `pattern_type`, replacing any previous one"""
        detect_fn = detector.detect if isinstance(detector, PatternDetector) else detector
        if not callable(detect_fn):
            raise ConfigurationError(
                f"Detector for {pattern_type} must be callable or expose detect()"
            )
        with self._lock:
            if pattern_type in self._detectors:
                logger.warning(f"Replacing detector for pattern type: {pattern_type}")
            self._detectors[str(pattern_type)] = detect_fn
        logger.debug(f"Registered detector: {pattern_type}")

    def unregister(self, pattern_type: str) -> bool:
        with self._lock:
            return self._detectors.pop(str(pattern_type), None) is not None

    def get(self, pattern_type: str) -> Optional[DetectFn]:
        with self._lock:
            return self._detectors.get(str(pattern_type))

    def get_registered_types(self) -> list[str]:
        with self._lock:
            return sorted(self._detectors)

    def __contains__(self, pattern_type: str) -> bool:
        return self.get(pattern_type) is not None


# Global registry instance
detector_registry = DetectorRegistry()


def register_detector(pattern_type: str):
    """Decorator registering a detector coroutine on the global registry"""

    def decorator(func: DetectFn) -> DetectFn:
        detector_registry.register(pattern_type, func)
        return func

    return decorator


def create_detected_pattern(
    pattern_type: str,
    description: str,
    severity: Severity,
    affected_entities: Optional[Iterable[AffectedEntity]] = None,
    suggested_actions: Optional[Iterable[str]] = None,
) -> DetectedPattern:
    """Build a fresh single-occurrence pattern stamped with the current time"""
    now = utcnow()
    return DetectedPattern(
        type=str(pattern_type),
        description=description,
        severity=Severity(severity),
        affected_entities=list(affected_entities or []),
        occurrences=1,
        first_detected_at=now,
        last_detected_at=now,
        suggested_actions=list(suggested_actions or []),
    )


def _canonical_order(pattern: DetectedPattern):
    return (
        -pattern.severity.rank,
        pattern.first_detected_at,
        pattern.id,
        pattern.description,
    )


def _union(lists: Iterable[Iterable[str]]) -> list[str]:
    seen: dict[str, None] = {}
    for items in lists:
        for item in items:
            seen.setdefault(item, None)
    return list(seen)


def _merge_group(members: list[DetectedPattern]) -> DetectedPattern:
    members = sorted(members, key=_canonical_order)
    representative = members[0]

    entities: dict[tuple[str, str], AffectedEntity] = {}
    for member in members:
        for entity in member.affected_entities:
            entities.setdefault(entity.sort_key(), entity)

    return representative.model_copy(
        update={
            "severity": max((m.severity for m in members), key=lambda s: s.rank),
            "occurrences": sum(m.occurrences for m in members),
            "first_detected_at": min(m.first_detected_at for m in members),
            "last_detected_at": max(m.last_detected_at for m in members),
            "affected_entities": [entities[key] for key in sorted(entities)],
            "suggested_actions": _union(m.suggested_actions for m in members),
            "matched_actions": _union(m.matched_actions for m in members),
        },
        deep=True,
    )


def sort_patterns(patterns: Iterable[DetectedPattern]) -> list[DetectedPattern]:
    """Order by severity (highest first), then most recently seen first"""
    return sorted(
        patterns,
        key=lambda p: (-p.severity.rank, -p.last_detected_at.timestamp()),
    )


def merge_patterns(patterns: Iterable[DetectedPattern]) -> list[DetectedPattern]:
    """
    Collapse reports of the same condition into one pattern per group

    Patterns are grouped by type plus their set of affected (type, id) pairs.
    Within a group occurrences are summed, the detection range is widened and
    the highest severity wins. The surviving id and description come from the
    most severe, earliest-seen member, so the output does not depend on input
    order and merging a merged list changes nothing.
    """
    groups: dict[tuple, list[DetectedPattern]] = {}
    for pattern in patterns:
        groups.setdefault(pattern.group_key(), []).append(pattern)

    merged = [_merge_group(groups[key]) for key in sorted(groups)]
    return sort_patterns(merged)


def filter_by_severity(
    patterns: Iterable[DetectedPattern], min_severity: Optional[Severity]
) -> list[DetectedPattern]:
    if min_severity is None:
        return list(patterns)
    threshold = Severity(min_severity).rank
    return [p for p in patterns if p.severity.rank >= threshold]


@trace_async("selfheal.detect_patterns")
async def detect_patterns(
    organization_id: str,
    pattern_types: Optional[Iterable[str]] = None,
    time_window_minutes: int = 60,
    min_severity: Optional[Severity] = None,
    registry: Optional[DetectorRegistry] = None,
) -> DetectionResult:
    """
    Run detectors for an organization and return merged, ranked patterns

    Detectors run one after another; a detector that raises (or a pattern
    type with no detector) is recorded in `errors` and the scan continues.

    Args:
        organization_id: Tenant to scan
        pattern_types: Types to scan (None = every registered type)
        time_window_minutes: Look-back window handed to each detector
        min_severity: Drop merged patterns below this severity
        registry: Detector registry (defaults to the global one)

    Returns:
        DetectionResult with patterns, detectors run, per-type errors and timing
    """
    registry = registry or detector_registry
    types = (
        list(dict.fromkeys(str(t) for t in pattern_types))
        if pattern_types is not None
        else registry.get_registered_types()
    )
    metrics = get_metrics()
    start_time = time.time()

    set_attribute("selfheal.organization_id", organization_id)
    set_attribute("selfheal.pattern_types", ",".join(types))

    collected: list[DetectedPattern] = []
    detectors_run: list[str] = []
    errors: dict[str, str] = {}

    for pattern_type in types:
        detect_fn = registry.get(pattern_type)
        if detect_fn is None:
            message = f"No detector registered for pattern type: {pattern_type}"
            logger.warning(message)
            errors[pattern_type] = message
            continue

        detectors_run.append(pattern_type)
        try:
            found = await detect_fn(organization_id, time_window_minutes)
        except Exception as e:
            logger.error(
                f"Detector {pattern_type} failed for organization {organization_id}: {e}"
            )
            errors[pattern_type] = str(e) or type(e).__name__
            if metrics:
                metrics.record_detector_error(pattern_type)
            continue

        logger.debug(f"Detector {pattern_type} returned {len(found)} patterns")
        collected.extend(found)

    patterns = filter_by_severity(merge_patterns(collected), min_severity)

    duration = time.time() - start_time
    if metrics:
        metrics.record_detection_duration(duration)
        for pattern in patterns:
            metrics.record_pattern(pattern.type, pattern.severity.value)

    add_event(
        "detection_complete",
        {"patterns": len(patterns), "errors": len(errors)},
    )
    logger.info(
        f"Detected {len(patterns)} patterns for {organization_id} "
        f"({len(detectors_run)} detectors, {len(errors)} errors)"
    )

    return DetectionResult(
        patterns=patterns,
        detectors_run=detectors_run,
        errors=errors,
        duration_ms=duration * 1000,
    )
