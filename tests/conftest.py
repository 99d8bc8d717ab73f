"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from config import WatcherConfig, reset_config
from constants import FINALIZER_NAME
from node_store import ConflictError, Node, NodeNotFoundError, NodeStore
from plugins.actions.base import CleanupPlugin
from plugins.registry import PluginRegistry, reset_registry

CREATED_AT = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
DELETED_AT = datetime(2024, 1, 16, 12, 30, 0, tzinfo=timezone.utc)


class FakeNodeStore(NodeStore):
    """
    In-memory NodeStore.

    Resource versions increase on every write and patches carrying a stale
    resource version are rejected, like the API server does. A deleting node
    whose last finalizer is removed disappears.
    """

    def __init__(self, nodes: Optional[List[Node]] = None):
        self.nodes: Dict[str, Node] = {}
        self.patches: List[Tuple[str, List[str], Optional[str]]] = []
        self.watch_events: asyncio.Queue = asyncio.Queue()
        self.list_calls = 0
        self.conflicts_remaining = 0
        self.fail_list: Optional[Exception] = None
        self.fail_get: Optional[Exception] = None
        self._rv = 0
        for node in nodes or []:
            self.add(node)

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    def add(self, node: Node) -> Node:
        stored = node.copy()
        stored.resource_version = self._next_rv()
        self.nodes[stored.name] = stored
        return stored.copy()

    def update(self, name: str, **changes) -> Node:
        stored = self.nodes[name]
        for key, value in changes.items():
            setattr(stored, key, value)
        stored.resource_version = self._next_rv()
        return stored.copy()

    def finalizers(self, name: str) -> List[str]:
        return list(self.nodes[name].finalizers)

    async def list_nodes(self):
        self.list_calls += 1
        if self.fail_list is not None:
            raise self.fail_list
        return [node.copy() for node in self.nodes.values()], str(self._rv)

    async def get_node(self, name: str) -> Node:
        if self.fail_get is not None:
            raise self.fail_get
        if name not in self.nodes:
            raise NodeNotFoundError(f"node {name} not found", status=404)
        return self.nodes[name].copy()

    async def patch_node_finalizers(self, name, finalizers, resource_version=None):
        self.patches.append((name, list(finalizers), resource_version))
        if name not in self.nodes:
            raise NodeNotFoundError(f"node {name} not found", status=404)

        stored = self.nodes[name]
        if self.conflicts_remaining > 0:
            # Someone else wrote the node in between
            self.conflicts_remaining -= 1
            stored.resource_version = self._next_rv()
            raise ConflictError(f"conflict patching {name}", status=409)
        if resource_version and resource_version != stored.resource_version:
            raise ConflictError(f"conflict patching {name}", status=409)

        stored.finalizers = list(finalizers)
        stored.resource_version = self._next_rv()
        result = stored.copy()
        if stored.is_deleting and not stored.finalizers:
            del self.nodes[name]
        return result

    async def watch_nodes(self, resource_version, timeout_seconds=300):
        while True:
            item = await self.watch_events.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class RecordingPlugin(CleanupPlugin):
    """Cleanup plugin that records its calls and can fail on demand."""

    def __init__(self, name: str, calls: list, applies=True, failures: int = 0):
        super().__init__()
        self._name = name
        self.calls = calls
        self.applies = applies
        self.failures = failures

    @property
    def name(self) -> str:
        return self._name

    def should_run(self, node: Node) -> bool:
        if callable(self.applies):
            return self.applies(node)
        return self.applies

    async def cleanup(self, ctx, node: Node) -> None:
        self.calls.append((self._name, node.name, ctx.attempt))
        if self.failures != 0:
            self.failures -= 1
            raise RuntimeError(f"{self._name} failed")


def make_node(
    name: str = "node-1",
    finalizers: Optional[List[str]] = None,
    deleting: bool = False,
    labels: Optional[Dict[str, str]] = None,
    annotations: Optional[Dict[str, str]] = None,
    conditions: Optional[Dict[str, str]] = None,
) -> Node:
    return Node(
        name=name,
        uid=f"uid-{name}",
        creation_timestamp=CREATED_AT,
        deletion_timestamp=DELETED_AT if deleting else None,
        labels=labels or {},
        annotations=annotations or {},
        finalizers=list(finalizers or []),
        conditions=conditions or {"Ready": "True"},
    )


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset module-level singletons between tests."""
    reset_config()
    reset_registry()
    yield
    reset_config()
    reset_registry()


@pytest.fixture
def node_factory():
    """Factory for Node objects."""
    return make_node


@pytest.fixture
def deleting_node():
    """A node pending deletion that carries the cleanup finalizer."""
    return make_node("node-1", finalizers=[FINALIZER_NAME], deleting=True)


@pytest.fixture
def fake_store():
    """Empty in-memory node store."""
    return FakeNodeStore()


@pytest.fixture
def plugin_calls():
    """Shared call log for RecordingPlugin instances."""
    return []


@pytest.fixture
def plugin_factory(plugin_calls):
    """Factory for RecordingPlugin instances sharing plugin_calls."""

    def factory(name: str, applies=True, failures: int = 0) -> RecordingPlugin:
        return RecordingPlugin(name, plugin_calls, applies=applies, failures=failures)

    return factory


@pytest.fixture
def mock_event_bus():
    """Event bus mock recording published events."""
    return MagicMock()


@pytest.fixture
def registry(mock_event_bus):
    """Empty plugin registry publishing to mock_event_bus."""
    return PluginRegistry(event_bus=mock_event_bus)


@pytest.fixture
def watcher_config():
    """Watcher configuration with short timings for tests."""
    return WatcherConfig(
        retry_delay=0.01,
        retry_max_delay=1.0,
        work_queue_size=100,
        resync_period=0,
        cache_sync_timeout=1.0,
        finalizer_operation_timeout=1.0,
        watch_timeout=5,
        max_conflict_retries=3,
    )


def published_types(event_bus: MagicMock) -> list:
    """Event types published on a mock event bus, in order."""
    return [call.args[0].event_type for call in event_bus.publish_nowait.call_args_list]


@pytest.fixture
def event_types(mock_event_bus):
    """Callable returning the event types published so far."""
    return lambda: published_types(mock_event_bus)
