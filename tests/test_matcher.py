"""
Test suite for the Pattern-Action Matcher
"""

from unittest.mock import MagicMock, patch

import pytest

from selfheal.matcher import PatternActionMatcher

from conftest import make_action, make_pattern


@pytest.mark.asyncio
async def test_match_all_candidates(storage):
    """Every active pattern-triggered action of the right type is a candidate"""
    await storage.save_action(make_action(id="a1"))
    await storage.save_action(make_action(id="a2", action_type="escalation"))
    await storage.save_action(make_action(id="a3", is_active=False))
    await storage.save_action(
        make_action(id="a4", trigger_config={"type": "schedule", "pattern_type": "stuck_workflow"})
    )
    await storage.save_action(
        make_action(id="a5", trigger_config={"type": "pattern", "pattern_type": "integration_failure"})
    )
    await storage.save_action(make_action(id="a6", organization_id="other-org"))

    matcher = PatternActionMatcher(storage)
    matches = await matcher.match("org-1", [make_pattern()])

    assert matches == {"pattern-1": ["a1", "a2"]}


@pytest.mark.asyncio
async def test_unmatched_pattern_maps_to_empty(storage):
    await storage.save_action(make_action())
    matcher = PatternActionMatcher(storage)

    matches = await matcher.match("org-1", [make_pattern(id="p-x", type="workload_imbalance")])

    assert matches == {"p-x": []}


@pytest.mark.asyncio
async def test_no_actions(storage):
    matcher = PatternActionMatcher(storage)
    assert await matcher.match("org-1", []) == {}


def test_annotate_returns_copies():
    pattern = make_pattern()
    annotated = PatternActionMatcher.annotate([pattern], {"pattern-1": ["a1"]})

    assert annotated[0].matched_actions == ["a1"]
    assert pattern.matched_actions == []


@pytest.mark.asyncio
async def test_match_is_traced(storage):
    tracer = MagicMock()
    with patch("selfheal.observability.tracer.get_tracer", return_value=tracer):
        await PatternActionMatcher(storage).match("org-1", [make_pattern()])

    tracer.start_as_current_span.assert_called_once()
    assert tracer.start_as_current_span.call_args.args[0] == "selfheal.match_patterns"
