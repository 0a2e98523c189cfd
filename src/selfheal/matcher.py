"""
Pattern-Action Matcher

Resolves detected patterns to the operator-configured actions they trigger.
"""

import logging
from collections.abc import Iterable

from .models import AutomatedAction, DetectedPattern
from .observability.tracer import set_attribute, trace_async
from .storage.base import StorageBackend

logger = logging.getLogger(__name__)


class PatternActionMatcher:
    """Match patterns to active pattern-triggered actions"""

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    async def get_candidate_actions(self, organization_id: str) -> list[AutomatedAction]:
        """Active actions whose trigger is a pattern"""
        actions = await self.storage.list_actions(organization_id, active_only=True)
        return [a for a in actions if a.trigger_config.type == "pattern"]

    async def resolve(
        self, organization_id: str, patterns: Iterable[DetectedPattern]
    ) -> list[tuple[DetectedPattern, list[AutomatedAction]]]:
        """Each pattern paired with every action it triggers, in input order"""
        candidates = await self.get_candidate_actions(organization_id)
        resolved = [
            (pattern, [a for a in candidates if a.matches_pattern(pattern)])
            for pattern in patterns
        ]

        matched = sum(1 for _, actions in resolved if actions)
        logger.debug(
            f"Matched {matched}/{len(resolved)} patterns against "
            f"{len(candidates)} candidate actions for {organization_id}"
        )
        return resolved

    @trace_async("selfheal.match_patterns")
    async def match(
        self, organization_id: str, patterns: Iterable[DetectedPattern]
    ) -> dict[str, list[str]]:
        """
        Map each pattern id to the ids of every action it triggers

        All matching actions are candidates; there is no ranking. Patterns
        without candidates map to an empty list.
        """
        set_attribute("selfheal.organization_id", organization_id)
        matches = {
            pattern.id: [action.id for action in actions]
            for pattern, actions in await self.resolve(organization_id, patterns)
        }
        set_attribute("selfheal.matched_patterns", sum(1 for ids in matches.values() if ids))
        return matches

    @staticmethod
    def annotate(
        patterns: Iterable[DetectedPattern], matches: dict[str, list[str]]
    ) -> list[DetectedPattern]:
        """Copies of `patterns` with matched_actions filled from `matches`"""
        return [
            p.model_copy(update={"matched_actions": list(matches.get(p.id, []))}, deep=True)
            for p in patterns
        ]
