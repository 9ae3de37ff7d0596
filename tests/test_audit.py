"""Tests for the audit trail and its system_events mirror."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from pipeline.audit import AuditEventType, AuditLogEntry, BlackBoxAuditLog, InMemoryAuditLog


def entry(event_type, correlation_id="ref-1", entity_id="order-1"):
    return AuditLogEntry(
        correlation_id=correlation_id,
        event_type=event_type,
        entity_type="order",
        entity_id=entity_id,
        new_state={"status": "Processing"},
    )


class TestInMemoryAuditLog:
    @pytest.mark.asyncio
    async def test_groups_by_correlation_id(self):
        log = InMemoryAuditLog()
        await log.append(entry(AuditEventType.WEBHOOK_RECEIVED))
        await log.append(entry(AuditEventType.WEBHOOK_RECEIVED, correlation_id="ref-2"))
        await log.append(entry(AuditEventType.SETTLEMENT_COMMITTED))

        trail = await log.get_by_correlation_id("ref-1")

        assert [e.event_type for e in trail] == [
            AuditEventType.WEBHOOK_RECEIVED,
            AuditEventType.SETTLEMENT_COMMITTED,
        ]
        assert await log.get_by_correlation_id("nope") == []


class TestBlackBoxAuditLog:
    @pytest.mark.asyncio
    async def test_append_mirrors_to_system_events(self):
        with patch("pipeline.audit.log_event", new=AsyncMock(return_value="evt-1")) as log_event:
            await BlackBoxAuditLog().append(entry(AuditEventType.OUTBOX_DEAD_LETTER))

        kwargs = log_event.await_args.kwargs
        assert kwargs["event_type"] == "OUTBOX_DEAD_LETTER"
        assert kwargs["severity"] == "CRITICAL"
        assert kwargs["correlation_id"] == "ref-1"
        assert kwargs["payload"]["new_state"] == {"status": "Processing"}

    @pytest.mark.asyncio
    async def test_rejections_are_warnings(self):
        with patch("pipeline.audit.log_event", new=AsyncMock()) as log_event:
            await BlackBoxAuditLog().append(entry(AuditEventType.SETTLEMENT_REJECTED))
        assert log_event.await_args.kwargs["severity"] == "WARN"

    @pytest.mark.asyncio
    async def test_reads_fall_back_to_persisted_events(self):
        rows = [
            {
                "id": "b",
                "event_type": "SETTLEMENT_COMMITTED",
                "agent": "webhook",
                "timestamp": datetime(2024, 5, 1, 12, 0, 1, tzinfo=timezone.utc),
                "payload": {"entity_type": "order", "entity_id": "order-1", "new_state": {"status": "Processing"}},
            },
            {
                "id": "a",
                "event_type": "WEBHOOK_RECEIVED",
                "agent": "webhook",
                "timestamp": datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc),
                "payload": {"entity_type": "webhook", "entity_id": "ref-1"},
            },
        ]
        with patch("pipeline.audit.get_events_for_reference", new=AsyncMock(return_value=rows)):
            trail = await BlackBoxAuditLog().get_by_correlation_id("ref-1")

        assert [e.event_type for e in trail] == [
            AuditEventType.WEBHOOK_RECEIVED,
            AuditEventType.SETTLEMENT_COMMITTED,
        ]
        assert trail[1].new_state == {"status": "Processing"}

    @pytest.mark.asyncio
    async def test_in_process_entries_skip_the_database(self):
        lookup = AsyncMock(return_value=[])
        with patch("pipeline.audit.log_event", new=AsyncMock()), \
                patch("pipeline.audit.get_events_for_reference", new=lookup):
            log = BlackBoxAuditLog()
            await log.append(entry(AuditEventType.WEBHOOK_RECEIVED))
            trail = await log.get_by_correlation_id("ref-1")

        assert len(trail) == 1
        lookup.assert_not_awaited()
