"""
Plugin Registry - Registration, enablement order and execution of cleanup plugins.

Plugins are registered once at startup. Only enablement order matters:
run_all() walks the explicit execution order, never the registration map.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Type

from config import PluginConfig
from events import CleanupEventType, EventBus, emit
from node_store import Node
from plugins.actions.base import CleanupPlugin
from plugins.base import (
    CleanupCancelledError,
    CleanupContext,
    PluginAlreadyEnabledError,
    PluginAlreadyRegisteredError,
    PluginExecutionError,
    PluginNotFoundError,
)

logger = logging.getLogger(__name__)


class PluginRegistry:
    """
    Central registry for cleanup plugins.

    The plugin map is effectively read-only after startup configuration, so
    concurrent readers need no locking.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._plugins: Dict[str, CleanupPlugin] = {}
        self._enabled: Set[str] = set()
        # Execution order, in the order plugins were enabled
        self._order: List[str] = []
        self._event_bus = event_bus

    # Registration methods

    def register(self, plugin: CleanupPlugin) -> None:
        """
        Register a plugin instance under its name.

        Args:
            plugin: The configured CleanupPlugin instance

        Raises:
            PluginAlreadyRegisteredError: If the name is already taken
        """
        name = plugin.name
        if name in self._plugins:
            raise PluginAlreadyRegisteredError(name)

        self._plugins[name] = plugin
        logger.info(f"Registered cleanup plugin: {name} v{plugin.version}")

    def enable(self, name: str) -> None:
        """
        Enable a plugin and append it to the execution order.

        Raises:
            PluginNotFoundError: If no plugin with that name is registered
            PluginAlreadyEnabledError: If the plugin is already enabled
        """
        if name not in self._plugins:
            raise PluginNotFoundError(name)
        if name in self._enabled:
            raise PluginAlreadyEnabledError(name)

        self._enabled.add(name)
        self._order.append(name)
        logger.info(f"Enabled cleanup plugin: {name} (position {len(self._order)})")

    def disable(self, name: str) -> None:
        """
        Disable a plugin and remove it from the execution order.

        Re-enabling a disabled plugin appends it at the end of the order.

        Raises:
            PluginNotFoundError: If no plugin with that name is registered
        """
        if name not in self._plugins:
            raise PluginNotFoundError(name)
        if name not in self._enabled:
            logger.debug(f"Cleanup plugin {name} is not enabled")
            return

        self._enabled.discard(name)
        self._order.remove(name)
        logger.info(f"Disabled cleanup plugin: {name}")

    # Execution

    async def run_all(self, ctx: CleanupContext, node: Node) -> int:
        """
        Run every enabled plugin that applies to the node, in execution order.

        Stops at the first failure. Performs no cluster mutation itself.

        Args:
            ctx: The cleanup context for this attempt
            node: Freshly read node state

        Returns:
            The number of plugins that ran.

        Raises:
            PluginExecutionError: If a plugin raised; identifies the plugin
            CleanupCancelledError: If a plugin observed shutdown
        """
        order = list(self._order)
        total = len(order)
        logger.info(f"Starting cleanup plugins for node {node.name}: order={order}")

        ran = 0
        for position, name in enumerate(order, start=1):
            plugin = self._plugins[name]

            try:
                applies = plugin.should_run(node)
            except Exception as e:
                logger.error(
                    f"Plugin {name} applicability check failed for node {node.name}: {e}",
                    exc_info=True,
                )
                raise PluginExecutionError(name, e) from e

            if not applies:
                emit(
                    self._event_bus,
                    CleanupEventType.ACTION_SKIPPED,
                    node.name,
                    "Plugin skipped - conditions not met",
                    level=logging.DEBUG,
                    plugin=name,
                )
                continue

            emit(
                self._event_bus,
                CleanupEventType.ACTION_STARTED,
                node.name,
                "Running plugin",
                plugin=name,
                position=position,
                total=total,
            )

            try:
                await plugin.cleanup(ctx, node)
            except (CleanupCancelledError, asyncio.CancelledError):
                raise
            except Exception as e:
                emit(
                    self._event_bus,
                    CleanupEventType.ACTION_FAILED,
                    node.name,
                    f"Plugin execution failed: {e}",
                    level=logging.ERROR,
                    plugin=name,
                )
                raise PluginExecutionError(name, e) from e

            emit(
                self._event_bus,
                CleanupEventType.ACTION_SUCCEEDED,
                node.name,
                "Plugin completed successfully",
                plugin=name,
            )
            ran += 1

        logger.info(
            f"Cleanup plugins completed for node {node.name}: "
            f"executed {ran} of {total}"
        )
        return ran

    # Discovery methods

    def enabled_plugins(self) -> List[str]:
        """List enabled plugin names (informational; see execution_order)."""
        return [name for name in self._order if name in self._enabled]

    @property
    def execution_order(self) -> List[str]:
        return list(self._order)

    def list_plugins(self) -> List[str]:
        """List all registered plugin names."""
        return list(self._plugins.keys())

    def has_plugin(self, name: str) -> bool:
        """Check if a plugin is registered."""
        return name in self._plugins

    def get_plugin(self, name: str) -> CleanupPlugin:
        """
        Get a registered plugin instance.

        Raises:
            PluginNotFoundError: If the plugin name is not registered
        """
        if name not in self._plugins:
            raise PluginNotFoundError(name)
        return self._plugins[name]

    def get_plugin_info(self, name: str) -> Optional[Dict[str, Any]]:
        """
        Get information about a registered plugin.

        Returns:
            Dictionary with name, version, enabled and position (1-based,
            None when disabled), or None if not found
        """
        plugin = self._plugins.get(name)
        if plugin is None:
            return None
        return {
            "name": name,
            "version": plugin.version,
            "enabled": name in self._enabled,
            "position": self._order.index(name) + 1 if name in self._order else None,
        }


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def builtin_plugin_classes() -> List[Type[CleanupPlugin]]:
    """Return the cleanup plugin classes that ship with the controller."""
    from plugins.actions.logger import LoggerPlugin
    from plugins.actions.portworx import PortworxPlugin

    return [LoggerPlugin, PortworxPlugin]


def register_builtin_plugins(
    plugin_config: Optional[PluginConfig] = None,
    registry: Optional[PluginRegistry] = None,
) -> Dict[str, Dict[str, str]]:
    """
    Configure and register the built-in cleanup plugins.

    Each plugin's options come from its own environment variables, with
    overrides from plugin_config taking precedence.

    Args:
        plugin_config: Plugin configuration holding per-plugin overrides
        registry: Registry to use (defaults to the global registry)

    Returns:
        The effective options per registered plugin.
    """
    registry = registry or get_registry()
    plugin_config = plugin_config or PluginConfig()
    effective: Dict[str, Dict[str, str]] = {}

    for plugin_class in builtin_plugin_classes():
        plugin = plugin_class()
        options = plugin_class.load_config_from_env()
        options.update(plugin_config.get_plugin_config(plugin.name))
        plugin.configure(options)
        registry.register(plugin)
        effective[plugin.name] = options

    return effective
