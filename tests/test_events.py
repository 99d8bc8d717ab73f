"""Unit tests for event streaming."""

import asyncio
import json
import logging
from unittest.mock import MagicMock

import pytest

from events import CleanupEvent, CleanupEventType, EventBus, emit

# ==================== CleanupEvent tests ====================


class TestCleanupEvent:
    """Tests for the CleanupEvent dataclass."""

    @pytest.fixture
    def sample_event(self):
        return CleanupEvent(
            event_type=CleanupEventType.CLEANUP_FAILED,
            node_name="node-1",
            message="Cleanup failed",
            details={"plugin": "portworx", "attempt": 2},
            timestamp="2024-01-15T10:30:00Z",
        )

    def test_all_members(self):
        assert len(CleanupEventType) == 12

    def test_to_sse_format(self, sample_event):
        sse = sample_event.to_sse()
        lines = sse.split("\n")
        assert lines[0] == "event: CLEANUP_FAILED"
        assert lines[1].startswith("data: ")
        assert sse.endswith("\n\n")

    def test_to_sse_json_valid(self, sample_event):
        data_line = sample_event.to_sse().split("\n")[1]
        parsed = json.loads(data_line[len("data: ") :])
        assert parsed == {
            "event_type": "CLEANUP_FAILED",
            "node_name": "node-1",
            "message": "Cleanup failed",
            "details": {"plugin": "portworx", "attempt": 2},
            "timestamp": "2024-01-15T10:30:00Z",
        }

    def test_create_stamps_utc(self):
        event = CleanupEvent.create(
            CleanupEventType.MARKER_ADDED, "node-1", "added", finalizer="f"
        )
        assert event.timestamp.endswith("Z")
        assert event.details == {"finalizer": "f"}


# ==================== EventBus tests ====================


@pytest.mark.asyncio
class TestEventBus:
    """Tests for the EventBus pub/sub."""

    def event(self, node="node-1"):
        return CleanupEvent.create(CleanupEventType.CLEANUP_STARTED, node)

    async def test_publish_to_subscriber(self):
        bus = EventBus()
        _, subscription = await bus.subscribe()

        await bus.publish(self.event())

        received = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert received.node_name == "node-1"

    async def test_filter(self):
        bus = EventBus()
        _, subscription = await bus.subscribe(lambda e: e.node_name == "node-2")

        bus.publish_nowait(self.event("node-1"))
        bus.publish_nowait(self.event("node-2"))

        received = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert received.node_name == "node-2"

    async def test_unsubscribe_stops_iteration(self):
        bus = EventBus()
        subscriber_id, subscription = await bus.subscribe()
        assert bus.subscriber_count() == 1

        await bus.unsubscribe(subscriber_id)

        assert bus.subscriber_count() == 0
        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()

    async def test_full_queue_drops_event(self, caplog):
        bus = EventBus(queue_size=1)
        await bus.subscribe()

        with caplog.at_level(logging.WARNING):
            bus.publish_nowait(self.event())
            bus.publish_nowait(self.event())

        assert "queue full" in caplog.text

    async def test_publish_without_subscribers(self):
        await EventBus().publish(self.event())


class TestEmit:
    """Tests for the emit helper."""

    def test_logs_and_publishes(self, caplog):
        bus = MagicMock()

        with caplog.at_level(logging.INFO):
            event = emit(
                bus,
                CleanupEventType.RETRY_SCHEDULED,
                "node-1",
                "retrying",
                retry_delay=10,
            )

        bus.publish_nowait.assert_called_once_with(event)
        assert "[RETRY_SCHEDULED] node=node-1 retrying retry_delay=10" in caplog.text

    def test_without_bus(self):
        event = emit(None, CleanupEventType.MARKER_REMOVED, "node-1", "removed")
        assert event.event_type == CleanupEventType.MARKER_REMOVED
