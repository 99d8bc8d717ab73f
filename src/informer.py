"""
Node Informer - List+watch cache of cluster nodes.

Keeps a local copy of every node, dispatches add/update/delete callbacks and
signals when the initial list has been applied. A periodic resync re-delivers
every cached node as an update so that work dropped after a transient error
is picked up again.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from node_store import Node, NodeStore, NodeStoreError, WatchExpiredError
from plugins.base import wait_for_shutdown

logger = logging.getLogger(__name__)

AddHandler = Callable[[Node], None]
UpdateHandler = Callable[[Node, Node], None]
DeleteHandler = Callable[[Node], None]


@dataclass
class NodeEventHandler:
    """Callbacks invoked for cache changes. Handlers must not block."""

    on_add: Optional[AddHandler] = None
    on_update: Optional[UpdateHandler] = None
    on_delete: Optional[DeleteHandler] = None


class NodeInformer:
    """
    Maintains a consistent local cache of nodes from a NodeStore.

    Handlers run synchronously on the event loop and receive copies of the
    cached nodes.
    """

    def __init__(
        self,
        store: NodeStore,
        resync_period: float = 30.0,
        watch_timeout: int = 300,
        error_backoff: float = 5.0,
    ):
        self.store = store
        self.resync_period = resync_period
        self.watch_timeout = watch_timeout
        self.error_backoff = error_backoff

        self._cache: Dict[str, Node] = {}
        self._handlers: List[NodeEventHandler] = []
        self._synced = asyncio.Event()
        self._resource_version = ""

    def add_event_handler(
        self,
        on_add: Optional[AddHandler] = None,
        on_update: Optional[UpdateHandler] = None,
        on_delete: Optional[DeleteHandler] = None,
    ) -> None:
        """Register callbacks for node add, update and delete events."""
        self._handlers.append(NodeEventHandler(on_add, on_update, on_delete))

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    async def wait_for_sync(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the initial list has been applied to the cache.

        Returns:
            True if synced, False if the timeout elapsed first.
        """
        try:
            await asyncio.wait_for(self._synced.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def get(self, name: str) -> Optional[Node]:
        node = self._cache.get(name)
        return node.copy() if node is not None else None

    def list_nodes(self) -> List[Node]:
        return [node.copy() for node in self._cache.values()]

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        List, then watch, until shutdown.

        The watch itself is only interrupted by cancelling the task running
        this coroutine; the shutdown event is checked between watches.
        """
        logger.info("Starting node informer")
        resync_task = asyncio.create_task(self._resync_loop(shutdown_event))

        try:
            while not shutdown_event.is_set():
                try:
                    await self._list_and_watch(shutdown_event)
                except WatchExpiredError as e:
                    logger.info(f"Node watch expired, relisting: {e}")
                    self._resource_version = ""
                except NodeStoreError as e:
                    logger.error(f"Node list/watch failed: {e}")
                    self._resource_version = ""
                    if await wait_for_shutdown(shutdown_event, self.error_backoff):
                        break
                except Exception as e:
                    logger.error(f"Unexpected error in node informer: {e}", exc_info=True)
                    self._resource_version = ""
                    if await wait_for_shutdown(shutdown_event, self.error_backoff):
                        break
        finally:
            resync_task.cancel()
            await asyncio.gather(resync_task, return_exceptions=True)
            logger.info("Node informer stopped")

    async def _list_and_watch(self, shutdown_event: asyncio.Event) -> None:
        if not self._resource_version:
            nodes, resource_version = await self.store.list_nodes()
            self.replace(nodes)
            self._resource_version = resource_version
            if not self._synced.is_set():
                self._synced.set()
                logger.info(f"Node cache synced ({len(self._cache)} nodes)")

        while not shutdown_event.is_set():
            async for event_type, node in self.store.watch_nodes(
                self._resource_version, self.watch_timeout
            ):
                self.handle_event(event_type, node)
                if node.resource_version:
                    self._resource_version = node.resource_version
            logger.debug(
                f"Node watch closed, resuming from {self._resource_version}"
            )

    def replace(self, nodes: List[Node]) -> None:
        """Replace the cache with a fresh listing, dispatching the differences."""
        fresh = {node.name: node for node in nodes}

        for name in list(self._cache):
            if name not in fresh:
                self._dispatch_delete(self._cache.pop(name))

        for name, node in fresh.items():
            old = self._cache.get(name)
            self._cache[name] = node
            if old is None:
                self._dispatch_add(node)
            else:
                self._dispatch_update(old, node)

    def handle_event(self, event_type: str, node: Node) -> None:
        """Apply one watch event to the cache and dispatch it."""
        if event_type == "DELETED":
            old = self._cache.pop(node.name, None)
            self._dispatch_delete(old or node)
            return

        old = self._cache.get(node.name)
        self._cache[node.name] = node
        if old is None:
            self._dispatch_add(node)
        else:
            self._dispatch_update(old, node)

    def resync(self) -> None:
        """Re-deliver every cached node as an update event."""
        for node in list(self._cache.values()):
            self._dispatch_update(node, node)

    async def _resync_loop(self, shutdown_event: asyncio.Event) -> None:
        if self.resync_period <= 0:
            return
        while not await wait_for_shutdown(shutdown_event, self.resync_period):
            if self._synced.is_set():
                logger.debug(f"Resyncing {len(self._cache)} cached nodes")
                self.resync()

    def _dispatch_add(self, node: Node) -> None:
        for handler in self._handlers:
            if handler.on_add:
                self._call(handler.on_add, node.copy())

    def _dispatch_update(self, old: Node, new: Node) -> None:
        for handler in self._handlers:
            if handler.on_update:
                self._call(handler.on_update, old.copy(), new.copy())

    def _dispatch_delete(self, node: Node) -> None:
        for handler in self._handlers:
            if handler.on_delete:
                self._call(handler.on_delete, node.copy())

    @staticmethod
    def _call(fn: Callable[..., None], *args: Node) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.error(f"Node event handler failed: {e}", exc_info=True)
