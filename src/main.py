"""
Main entry point for the Node Cleanup Controller.

Wires the Kubernetes node store, the cleanup plugin registry, the watcher and
the health server together and runs them until SIGINT/SIGTERM.
"""

import asyncio
import logging
import signal
from typing import Optional

import click

from config import Config, load_config
from events import EventBus
from health import HealthServer
from node_store import KubernetesNodeStore, NodeStore
from plugins.base import PluginError
from plugins.registry import PluginRegistry, register_builtin_plugins
from watcher import CacheSyncError, NodeCleanupWatcher

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Application:
    """Main application that orchestrates the watcher and health server."""

    def __init__(self, config: Optional[Config] = None, store: Optional[NodeStore] = None):
        self.config = config or load_config()
        self.store = store
        self.event_bus: Optional[EventBus] = None
        self.registry: Optional[PluginRegistry] = None
        self.watcher: Optional[NodeCleanupWatcher] = None
        self.health: Optional[HealthServer] = None
        self.running = False

    def initialize(self) -> None:
        """Initialize all components."""
        logger.info("Initializing Node Cleanup Controller")

        if self.store is None:
            self.store = KubernetesNodeStore.from_config(self.config.kubernetes)

        self.event_bus = EventBus()
        self.registry = PluginRegistry(event_bus=self.event_bus)

        plugin_options = register_builtin_plugins(
            self.config.plugins, registry=self.registry
        )
        self.enable_plugins()
        self.config.log_summary(plugin_options)

        self.watcher = NodeCleanupWatcher(
            store=self.store,
            registry=self.registry,
            config=self.config.watcher,
            event_bus=self.event_bus,
        )

        health_config = self.config.health
        self.health = HealthServer(
            watcher=self.watcher,
            registry=self.registry,
            event_bus=self.event_bus,
            host=health_config.host,
            port=health_config.port,
            log_level=health_config.log_level,
        )

        logger.info("All components initialized")

    def enable_plugins(self) -> None:
        """Enable the configured plugins in order; failures are logged and skipped."""
        for name in self.config.plugins.enabled_plugins:
            try:
                self.registry.enable(name)
            except PluginError as e:
                logger.warning(f"Failed to enable plugin {name}: {e}")

        if not self.registry.execution_order:
            logger.warning(
                "No cleanup plugins enabled - nodes will be released without cleanup"
            )

    async def start(self) -> None:
        """Start the application and run until stopped."""
        if not self.watcher:
            self.initialize()

        self.running = True
        logger.info("Starting Node Cleanup Controller")

        try:
            await asyncio.gather(self._run_watcher(), self._run_health())
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def _run_watcher(self) -> None:
        try:
            await self.watcher.run()
        finally:
            await self.health.stop()

    async def _run_health(self) -> None:
        try:
            await self.health.start()
        finally:
            await self.watcher.stop()

    async def stop(self) -> None:
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping Node Cleanup Controller")
        self.running = False

        if self.watcher:
            await self.watcher.stop()
        if self.health:
            await self.health.stop()


async def main(config: Optional[Config] = None) -> None:
    """Run the controller until a shutdown signal arrives."""
    app = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    finally:
        await app.stop()


@click.command()
@click.option("--kubeconfig", envvar="KUBECONFIG", default="", help="Path to kubeconfig (empty for in-cluster)")
@click.option("--port", type=int, default=None, help="Health server port (overrides HEALTH_PORT)")
@click.option("--log-level", default=None, help="Logging level (overrides LOG_LEVEL)")
def cli(kubeconfig: str, port: Optional[int], log_level: Optional[str]):
    """Node Cleanup Controller - runs cleanup plugins before nodes are deleted."""
    config = load_config()
    if kubeconfig:
        config.kubernetes.kubeconfig = kubeconfig
    if port is not None:
        config.health.port = port
    if log_level:
        config.health.log_level = log_level

    logging.basicConfig(
        level=getattr(logging, config.health.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    try:
        asyncio.run(main(config))
    except CacheSyncError as e:
        logger.error(f"Controller failed to start: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
