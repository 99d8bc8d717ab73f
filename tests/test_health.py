"""Unit tests for health.py - Probe and event stream endpoints."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from events import CleanupEventType, EventBus, emit
from health import HealthServer


@pytest.fixture
def watcher():
    watcher = MagicMock()
    watcher.is_ready = False
    return watcher


@pytest.fixture
def server(watcher, registry, plugin_factory):
    registry.register(plugin_factory("logger"))
    registry.register(plugin_factory("portworx"))
    registry.enable("logger")
    return HealthServer(watcher, registry, event_bus=EventBus(), port=0)


@pytest.fixture
def http(server):
    return TestClient(server.app)


class TestProbes:
    """Tests for liveness and readiness."""

    def test_healthz(self, http):
        response = http.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_readyz_before_sync(self, http):
        response = http.get("/readyz")
        assert response.status_code == 503
        assert response.json() == {"status": "not ready"}

    def test_readyz_after_sync(self, http, watcher):
        watcher.is_ready = True

        response = http.get("/readyz")

        assert response.status_code == 200
        assert response.json() == {"status": "ready"}


class TestPluginListing:
    """Tests for the plugin listing endpoint."""

    def test_lists_plugins(self, http):
        response = http.get("/api/v1/plugins")

        assert response.status_code == 200
        body = response.json()
        assert body["execution_order"] == ["logger"]
        assert body["plugins"] == [
            {"name": "logger", "version": "1.0.0", "enabled": True, "position": 1},
            {"name": "portworx", "version": "1.0.0", "enabled": False, "position": None},
        ]


class TestEventStream:
    """Tests for the SSE endpoint."""

    def test_unavailable_without_event_bus(self, watcher, registry):
        server = HealthServer(watcher, registry, event_bus=None)

        response = TestClient(server.app).get("/api/v1/events")

        assert response.status_code == 503

    def test_server_stop_before_start(self, server):
        assert server.server is None


def events_endpoint(server):
    route = next(
        r for r in server.app.routes
        if isinstance(r, APIRoute) and r.path == "/api/v1/events"
    )
    return route.endpoint


@pytest.mark.asyncio
class TestEventSubscription:
    """Tests for streaming events from a subscribed client."""

    async def test_streams_events_for_one_node(self, server):
        bus = server.event_bus
        response = await events_endpoint(server)(node="node-1")

        assert response.media_type == "text/event-stream"
        assert bus.subscriber_count() == 1

        emit(bus, CleanupEventType.CLEANUP_STARTED, "node-2", "Running cleanup plugins")
        emit(
            bus, CleanupEventType.CLEANUP_STARTED, "node-1", "Running cleanup plugins",
            attempt=1,
        )
        chunk = await asyncio.wait_for(anext(response.body_iterator), timeout=1)

        event_line, data_line = chunk.strip().split("\n")
        assert event_line == "event: CLEANUP_STARTED"
        data = json.loads(data_line[len("data: "):])
        assert data["node_name"] == "node-1"
        assert data["details"] == {"attempt": 1}

        # Client disconnect closes the generator
        await response.body_iterator.aclose()
        assert bus.subscriber_count() == 0

    async def test_streams_all_nodes_without_filter(self, server):
        response = await events_endpoint(server)()

        emit(server.event_bus, CleanupEventType.MARKER_ADDED, "node-a", "Finalizer added")
        emit(server.event_bus, CleanupEventType.MARKER_ADDED, "node-b", "Finalizer added")
        first = await asyncio.wait_for(anext(response.body_iterator), timeout=1)
        second = await asyncio.wait_for(anext(response.body_iterator), timeout=1)
        await response.body_iterator.aclose()

        assert '"node_name": "node-a"' in first
        assert '"node_name": "node-b"' in second
