"""
Test suite for the audit trail
"""

import csv
import io
from unittest.mock import AsyncMock, patch

import pytest

from selfheal.audit import CSV_HEADERS, AuditEventType, AuditTrail, map_pattern_severity
from selfheal.errors import StorageConnectionError
from selfheal.models import Severity

from conftest import ORG, make_action, make_pattern


class TestSeverityMapping:
    """Test pattern -> audit severity mapping"""

    @pytest.mark.parametrize(
        "severity,expected",
        [
            (Severity.CRITICAL, "error"),
            (Severity.HIGH, "error"),
            (Severity.MEDIUM, "warning"),
            (Severity.LOW, "info"),
        ],
    )
    def test_mapping(self, severity, expected):
        assert map_pattern_severity(severity) == expected


class TestAuditTrail:
    """Test writing and querying audit entries"""

    @pytest.mark.asyncio
    async def test_pattern_detected(self, audit):
        entry = await audit.log_pattern_detected(make_pattern(severity=Severity.MEDIUM), ORG)

        assert entry.event_type == "pattern_detected"
        assert entry.entity_type == "pattern"
        assert entry.entity_id == "pattern-1"
        assert entry.severity == "warning"
        assert entry.details["affected_entities"][0]["id"] == "wf-1"

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, audit, storage):
        with patch.object(storage, "append_audit", AsyncMock(side_effect=StorageConnectionError("down"))):
            entry = await audit.log_action_triggered(make_action(), "alice")

        assert entry is None

    @pytest.mark.asyncio
    async def test_query_filters_and_pages(self, audit, clock):
        action = make_action()
        await audit.log_action_triggered(action, "alice")
        clock.advance(minutes=1)
        await audit.log_pattern_detected(make_pattern(), ORG)
        clock.advance(minutes=1)
        await audit.log_action_triggered(action, "bob")

        entries, total = await audit.query(ORG, event_types=[AuditEventType.ACTION_TRIGGERED])
        assert total == 2
        assert [e.user_id for e in entries] == ["bob", "alice"]

        page, total = await audit.query(ORG, limit=1, offset=1)
        assert total == 3
        assert page[0].event_type == "pattern_detected"

        entries, _ = await audit.query(ORG, user_id="alice")
        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_entity_trail(self, audit):
        await audit.log_pattern_detected(make_pattern(), ORG)
        await audit.log_pattern_detected(make_pattern(id="pattern-2"), ORG)

        trail = await audit.get_entity_trail("pattern", "pattern-2", ORG)

        assert [e.entity_id for e in trail] == ["pattern-2"]

    @pytest.mark.asyncio
    async def test_statistics(self, audit, clock):
        await audit.log_pattern_detected(make_pattern(severity=Severity.CRITICAL), ORG)
        clock.advance(days=1)
        await audit.log_action_triggered(make_action(), None)

        stats = await audit.get_statistics(ORG, days=30)

        assert stats["total_events"] == 2
        assert stats["by_event_type"] == {"pattern_detected": 1, "action_triggered": 1}
        assert stats["by_severity"] == {"error": 1, "info": 1}
        assert [d["count"] for d in stats["daily_counts"]] == [1, 1]

    @pytest.mark.asyncio
    async def test_statistics_window(self, audit, clock):
        await audit.log_pattern_detected(make_pattern(), ORG)
        clock.advance(days=40)

        stats = await audit.get_statistics(ORG, days=30)

        assert stats["total_events"] == 0

    @pytest.mark.asyncio
    async def test_export_csv(self, audit):
        await audit.log_action_triggered(make_action(), None)

        rows = list(csv.reader(io.StringIO(await audit.export_csv(ORG))))

        assert rows[0] == CSV_HEADERS
        assert rows[1][1] == "action_triggered"
        assert rows[1][5] == "system"
        assert '"action_type": "notify"' in rows[1][7]

    @pytest.mark.asyncio
    async def test_organizations_are_separate(self, storage, clock):
        audit = AuditTrail(storage, clock=clock)
        await audit.log_pattern_detected(make_pattern(), "org-2")

        _, total = await audit.query(ORG)

        assert total == 0
