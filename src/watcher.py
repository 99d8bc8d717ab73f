"""
Node Cleanup Watcher - Deletion lifecycle reconciler for cluster nodes.

Keeps the cleanup finalizer on every node, detects nodes pending deletion,
runs the enabled cleanup plugins for them through a single worker, and
removes the finalizer only once cleanup has succeeded. Failed cleanups are
retried after a delay until they succeed or an operator sets the skip
annotation.
"""

import asyncio
import logging
import random
from typing import Coroutine, Dict, Optional, Set

from config import WatcherConfig
from constants import FINALIZER_NAME, SKIP_CLEANUP_ANNOTATION
from events import CleanupEventType, EventBus, emit
from informer import NodeInformer
from node_store import (
    ConflictError,
    Node,
    NodeNotFoundError,
    NodeStore,
    NodeStoreError,
    with_finalizer,
    without_finalizer,
)
from plugins.base import (
    CleanupCancelledError,
    CleanupContext,
    PluginExecutionError,
    wait_for_shutdown,
)
from plugins.registry import PluginRegistry, get_registry

logger = logging.getLogger(__name__)


class CacheSyncError(Exception):
    """Raised when the node cache does not sync in time at startup."""


class InFlightSet:
    """
    Names of nodes that are queued, being cleaned up, or waiting for a retry.

    Only used from the event loop thread, so claim() is an atomic
    check-and-set.
    """

    def __init__(self):
        self._names: Set[str] = set()

    def claim(self, name: str) -> bool:
        """Claim a node name. Returns False if it was already claimed."""
        if name in self._names:
            return False
        self._names.add(name)
        return True

    def release(self, name: str) -> None:
        self._names.discard(name)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)


class NodeCleanupWatcher:
    """
    Watches nodes and runs cleanup before they are deleted.

    Informer callbacks only validate and enqueue or spawn; the cluster
    writes happen on background tasks and cleanup happens on the single
    worker loop, one node at a time.
    """

    def __init__(
        self,
        store: NodeStore,
        registry: Optional[PluginRegistry] = None,
        config: Optional[WatcherConfig] = None,
        event_bus: Optional[EventBus] = None,
        informer: Optional[NodeInformer] = None,
    ):
        self.store = store
        self.registry = registry or get_registry()
        self.config = config or WatcherConfig()
        self._event_bus = event_bus
        self.informer = informer or NodeInformer(
            store,
            resync_period=self.config.resync_period,
            watch_timeout=self.config.watch_timeout,
        )

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.work_queue_size)
        self.processing = InFlightSet()
        self.running = False

        self._shutdown_event = asyncio.Event()
        self._ready = False
        # Cleanup attempts per node for the current deletion cycle
        self._attempts: Dict[str, int] = {}
        # Nodes with a finalizer-add task in flight
        self._adding: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

        self.informer.add_event_handler(
            on_add=self._on_add,
            on_update=self._on_update,
            on_delete=self._on_delete,
        )

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    def attempts(self, name: str) -> int:
        """Cleanup attempts made for a node in its current deletion cycle."""
        return self._attempts.get(name, 0)

    # ==================== Lifecycle ====================

    async def run(self) -> None:
        """
        Run the watcher until stop() is called.

        Starts the informer, waits for the cache to sync, adds the finalizer
        to nodes that predate this process, then consumes the work queue.

        Raises:
            CacheSyncError: If the node cache does not sync in time
        """
        logger.info(f"Starting cleanup watcher (finalizer={FINALIZER_NAME})")
        self.running = True
        informer_task = asyncio.create_task(self.informer.run(self._shutdown_event))

        try:
            if not await self._wait_for_cache_sync(informer_task):
                return

            await self.initialize_existing_nodes()
            self._ready = True

            await self._process_queue()
            logger.info("Cleanup watcher stopping gracefully")
        finally:
            self.running = False
            self._ready = False
            informer_task.cancel()
            pending = list(self._tasks)
            for task in pending:
                task.cancel()
            await asyncio.gather(informer_task, *pending, return_exceptions=True)

    async def stop(self) -> None:
        """Signal the watcher, its retry timers and the informer to stop."""
        logger.info("Stopping cleanup watcher")
        self._shutdown_event.set()

    async def _wait_for_cache_sync(self, informer_task: asyncio.Task) -> bool:
        timeout = self.config.cache_sync_timeout
        sync = asyncio.ensure_future(self.informer.wait_for_sync(timeout))
        stopper = asyncio.ensure_future(self._shutdown_event.wait())

        try:
            done, _ = await asyncio.wait(
                {sync, stopper, informer_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for fut in (sync, stopper):
                if not fut.done():
                    fut.cancel()

        if stopper in done:
            logger.info("Shutdown requested before node cache synced")
            return False
        if sync in done and sync.result():
            logger.info("Node cache synced successfully")
            return True
        if informer_task in done:
            raise CacheSyncError("Node informer stopped before the cache synced")
        raise CacheSyncError(f"Failed to sync node cache within {timeout}s")

    async def initialize_existing_nodes(self) -> Dict[str, int]:
        """
        Add the finalizer to every cached node that lacks it.

        Nodes already being deleted are skipped. Failures are logged and do
        not stop the sweep.

        Returns:
            Counts of nodes added, skipped and failed.
        """
        nodes = self.informer.list_nodes()
        logger.info(
            f"Initializing finalizers on {len(nodes)} existing nodes "
            f"(finalizer={FINALIZER_NAME})"
        )

        added = skipped = failed = 0
        for node in nodes:
            if node.is_deleting:
                logger.debug(f"Skipping node {node.name} - already being deleted")
                skipped += 1
                continue
            if node.has_finalizer(FINALIZER_NAME):
                logger.debug(f"Skipping node {node.name} - already has finalizer")
                skipped += 1
                continue
            if node.name in self._adding:
                logger.debug(f"Skipping node {node.name} - finalizer add in progress")
                skipped += 1
                continue

            self._adding.add(node.name)
            try:
                if await self.add_finalizer(node.name):
                    added += 1
                else:
                    skipped += 1
            except NodeStoreError as e:
                logger.error(f"Failed to add finalizer to existing node {node.name}: {e}")
                failed += 1
            finally:
                self._adding.discard(node.name)

        logger.info(
            f"Initialization complete: finalizers_added={added} "
            f"nodes_skipped={skipped} failed={failed} total_nodes={len(nodes)}"
        )
        return {"added": added, "skipped": skipped, "failed": failed}

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ==================== Informer callbacks ====================

    def _on_add(self, node: Node) -> None:
        logger.debug(f"Node added event: {node.name}")
        self.ensure_finalizer(node)
        self.enqueue_if_deleting(node)

    def _on_update(self, old: Node, node: Node) -> None:
        logger.debug(f"Node updated event: {node.name} (deleting={node.is_deleting})")
        self.ensure_finalizer(node)
        self.enqueue_if_deleting(node)

    def _on_delete(self, node: Node) -> None:
        logger.info(f"Node deleted from cache: {node.name}")
        self._attempts.pop(node.name, None)

    def ensure_finalizer(self, node: Node) -> bool:
        """
        Spawn a finalizer add for a node that needs one.

        Returns:
            True if an add task was started.
        """
        if node.is_deleting or node.has_finalizer(FINALIZER_NAME):
            return False
        if node.name in self._adding:
            return False

        self._adding.add(node.name)
        self._spawn(self._add_finalizer_task(node.name))
        return True

    async def _add_finalizer_task(self, name: str) -> None:
        try:
            await self.add_finalizer(name)
        except NodeStoreError as e:
            logger.error(f"Failed to add finalizer to node {name}: {e}")
        finally:
            self._adding.discard(name)

    def enqueue_if_deleting(self, node: Node) -> bool:
        """
        Queue a node for cleanup if it is pending deletion with our finalizer.

        Returns:
            True if the node was claimed and queued; False if it does not
            need cleanup or is already queued or being processed.
        """
        if not node.is_deleting:
            return False
        if not node.has_finalizer(FINALIZER_NAME):
            return False
        if not self.processing.claim(node.name):
            logger.debug(f"Node {node.name} already being processed")
            return False

        emit(
            self._event_bus,
            CleanupEventType.DELETION_DETECTED,
            node.name,
            "Node enqueued for cleanup",
            deletion_timestamp=node.deletion_timestamp.isoformat(),
        )
        self._enqueue(node.name)
        return True

    def _enqueue(self, name: str) -> None:
        try:
            self.queue.put_nowait(name)
        except asyncio.QueueFull:
            logger.warning(
                f"Work queue full ({self.queue.maxsize}), "
                f"waiting for space to enqueue node {name}"
            )
            self._spawn(self.queue.put(name))

    # ==================== Worker ====================

    async def _process_queue(self) -> None:
        while not self._shutdown_event.is_set():
            getter = asyncio.ensure_future(self.queue.get())
            stopper = asyncio.ensure_future(self._shutdown_event.wait())

            try:
                done, _ = await asyncio.wait(
                    {getter, stopper}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                for fut in (getter, stopper):
                    if not fut.done():
                        fut.cancel()

            if stopper in done:
                if getter in done:
                    self.processing.release(getter.result())
                return

            name = getter.result()
            try:
                await self.process_node(name)
            finally:
                self.queue.task_done()

    async def process_node(self, name: str) -> None:
        """
        Run one cleanup attempt for a queued node.

        Releases the node's in-flight claim when done, unless a retry was
        scheduled, in which case the retry timer owns the claim.
        """
        retry_scheduled = False
        try:
            retry_scheduled = await self._reconcile(name)
        except CleanupCancelledError:
            logger.info(f"Cleanup of node {name} interrupted by shutdown")
        except NodeStoreError as e:
            logger.error(f"Node store error while processing node {name}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error processing node {name}: {e}", exc_info=True)
        finally:
            if not retry_scheduled:
                self.processing.release(name)

    async def _reconcile(self, name: str) -> bool:
        """Returns True when a retry was scheduled."""
        logger.info(f"Processing node cleanup: {name}")

        try:
            node = await self._store_call(self.store.get_node(name), f"get node {name}")
        except NodeNotFoundError:
            logger.info(f"Node {name} no longer exists, nothing to clean up")
            self._attempts.pop(name, None)
            return False

        # Time may have passed since the node was queued
        if not node.is_deleting or not node.has_finalizer(FINALIZER_NAME):
            logger.debug(
                f"Node {name} no longer needs cleanup "
                f"(deleting={node.is_deleting}, "
                f"has_finalizer={node.has_finalizer(FINALIZER_NAME)})"
            )
            self._attempts.pop(name, None)
            return False

        if node.skip_cleanup:
            emit(
                self._event_bus,
                CleanupEventType.CLEANUP_SKIPPED,
                name,
                "Skip cleanup annotation detected - bypassing cleanup",
                level=logging.WARNING,
                annotation=SKIP_CLEANUP_ANNOTATION,
            )
            self._attempts.pop(name, None)
            await self.remove_finalizer(name)
            return False

        attempt = self._attempts.get(name, 0) + 1
        self._attempts[name] = attempt
        emit(
            self._event_bus,
            CleanupEventType.CLEANUP_STARTED,
            name,
            "Running cleanup plugins",
            attempt=attempt,
        )

        ctx = CleanupContext(
            node_name=name,
            attempt=attempt,
            shutdown_event=self._shutdown_event,
        )
        try:
            await self.registry.run_all(ctx, node)
        except PluginExecutionError as e:
            emit(
                self._event_bus,
                CleanupEventType.CLEANUP_FAILED,
                name,
                f"Cleanup failed: {e}",
                level=logging.ERROR,
                plugin=e.plugin_name,
                attempt=attempt,
            )
            self._schedule_retry(name, self.retry_delay(attempt))
            return True

        emit(
            self._event_bus,
            CleanupEventType.CLEANUP_SUCCEEDED,
            name,
            "Cleanup completed successfully - removing finalizer",
            attempt=attempt,
        )
        self._attempts.pop(name, None)
        await self.remove_finalizer(name)
        return False

    # ==================== Retry ====================

    def retry_delay(self, attempt: int) -> float:
        """Delay before retrying after the given failed attempt."""
        try:
            delay = self.config.retry_delay * (
                self.config.retry_backoff_factor ** max(attempt - 1, 0)
            )
        except OverflowError:
            delay = self.config.retry_max_delay
        delay = min(delay, self.config.retry_max_delay)
        jitter = self.config.retry_jitter_factor
        if jitter > 0:
            delay += delay * random.uniform(-jitter, jitter)
        return max(delay, 0.0)

    def _schedule_retry(self, name: str, delay: float) -> None:
        emit(
            self._event_bus,
            CleanupEventType.RETRY_SCHEDULED,
            name,
            f"Cleanup will be retried in {delay:.1f}s",
            level=logging.WARNING,
            retry_delay=round(delay, 3),
        )
        self._spawn(self._retry_after_delay(name, delay))

    async def _retry_after_delay(self, name: str, delay: float) -> None:
        try:
            shutting_down = await wait_for_shutdown(self._shutdown_event, delay)
        finally:
            self.processing.release(name)

        if shutting_down:
            logger.debug(f"Retry for node {name} cancelled by shutdown")
            return

        try:
            node = await self._store_call(self.store.get_node(name), f"get node {name}")
        except NodeNotFoundError:
            logger.info(f"Node {name} is gone, dropping retry")
            self._attempts.pop(name, None)
            return
        except NodeStoreError as e:
            logger.warning(f"Failed to re-read node {name} for retry: {e}")
            return

        if not self.enqueue_if_deleting(node):
            logger.debug(f"Node {name} no longer needs a retry")

    # ==================== Finalizer patches ====================

    async def add_finalizer(self, name: str) -> bool:
        """
        Add the cleanup finalizer with a read-check-patch.

        A node that already has the finalizer, is being deleted or is gone
        is left alone.

        Returns:
            True if the node was patched.
        """

        def add(node: Node):
            if node.is_deleting or node.has_finalizer(FINALIZER_NAME):
                return None
            return with_finalizer(node.finalizers, FINALIZER_NAME)

        try:
            patched = await self._patch_finalizers(name, add)
        except NodeNotFoundError:
            logger.debug(f"Node {name} is gone, no finalizer to add")
            return False

        if patched:
            emit(
                self._event_bus,
                CleanupEventType.MARKER_ADDED,
                name,
                "Finalizer added",
                finalizer=FINALIZER_NAME,
            )
        return patched

    async def remove_finalizer(self, name: str) -> bool:
        """
        Remove exactly the cleanup finalizer, leaving other finalizers intact.

        Returns:
            True if the node was patched.
        """

        def remove(node: Node):
            if not node.has_finalizer(FINALIZER_NAME):
                return None
            return without_finalizer(node.finalizers, FINALIZER_NAME)

        try:
            patched = await self._patch_finalizers(name, remove)
        except NodeNotFoundError:
            logger.info(f"Node {name} is already gone")
            return False

        if patched:
            emit(
                self._event_bus,
                CleanupEventType.MARKER_REMOVED,
                name,
                "Finalizer removed",
                finalizer=FINALIZER_NAME,
            )
        return patched

    async def _patch_finalizers(self, name: str, mutate) -> bool:
        """
        Re-read the node, compute new finalizers, patch guarded by resourceVersion.

        mutate(node) returns the new finalizer list, or None for no change.
        Conflicts restart the read-check-patch up to max_conflict_retries.
        """
        retries = 0
        while True:
            node = await self._store_call(self.store.get_node(name), f"get node {name}")
            finalizers = mutate(node)
            if finalizers is None:
                return False

            try:
                await self._store_call(
                    self.store.patch_node_finalizers(
                        name, finalizers, node.resource_version
                    ),
                    f"patch node {name}",
                )
                return True
            except ConflictError:
                if retries >= self.config.max_conflict_retries:
                    raise
                retries += 1
                logger.info(
                    f"Conflict patching node {name}, retrying "
                    f"({retries}/{self.config.max_conflict_retries})"
                )

    async def _store_call(self, coro: Coroutine, action: str):
        try:
            return await asyncio.wait_for(
                coro, timeout=self.config.finalizer_operation_timeout
            )
        except asyncio.TimeoutError as e:
            raise NodeStoreError(
                f"Timed out after {self.config.finalizer_operation_timeout}s: {action}"
            ) from e
